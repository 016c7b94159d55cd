import functools
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from flaggate.metrics import EVALS
from flaggate.models import RequestContext, utcnow
from flaggate.services.snapshot import FeatureManager

logger = logging.getLogger(__name__)

UNAVAILABLE_DETAIL = "feature unavailable"
REQUEST_PARAM = "flaggate_request"


def feature_unavailable(flag_name: str) -> Response:
    return JSONResponse(status_code=404, content={"detail": UNAVAILABLE_DETAIL})


def _find_request(args, kwargs) -> Optional[Request]:
    for value in list(args) + list(kwargs.values()):
        if isinstance(value, Request):
            return value
    return None


def _takes_request(sig: inspect.Signature) -> bool:
    for param in sig.parameters.values():
        if isinstance(param.annotation, type) and issubclass(param.annotation, Request):
            return True
    return False


def _with_request_param(sig: inspect.Signature) -> inspect.Signature:
    # keyword-only parameters must precede **kwargs
    extra = inspect.Parameter(REQUEST_PARAM, inspect.Parameter.KEYWORD_ONLY, annotation=Request)
    params = list(sig.parameters.values())
    if params and params[-1].kind is inspect.Parameter.VAR_KEYWORD:
        params.insert(len(params) - 1, extra)
    else:
        params.append(extra)
    return sig.replace(parameters=params)


class Gate:
    """Short-circuits handlers whose flag is off.

    The flag is looked up on every call through the manager, never at wrap
    time, so a reload applies to the very next request. Handlers that do not
    declare a ``Request`` parameter get one added to their advertised
    signature, so FastAPI always hands the gate the incoming request; it is
    removed again before the handler runs.
    """

    def __init__(
        self,
        manager: FeatureManager,
        context_builder: Optional[Callable[..., RequestContext]] = None,
        on_disabled: Callable[[str], Any] = feature_unavailable,
        clock: Callable[[], datetime] = utcnow,
        subject_header: str = "X-User-Id",
        groups_header: str = "X-User-Groups",
    ):
        self.manager = manager
        self.context_builder = context_builder
        self.on_disabled = on_disabled
        self.clock = clock
        self.subject_header = subject_header
        self.groups_header = groups_header

    def context_from_request(self, request: Optional[Request]) -> RequestContext:
        now = self.clock()
        if request is None:
            return RequestContext(now=now)
        params = request.query_params
        subject = request.headers.get(self.subject_header) or params.get("user_id")
        raw_groups = request.headers.get(self.groups_header, "")
        groups = frozenset(g.strip() for g in raw_groups.split(",") if g.strip())
        attributes = {k: v for k, v in params.items() if k != "user_id"}
        return RequestContext(subject_id=subject, groups=groups, now=now, attributes=attributes)

    def context_from_call(self, args, kwargs, request: Optional[Request] = None) -> RequestContext:
        if self.context_builder is not None:
            return self.context_builder(*args, **kwargs)
        return self.context_from_request(request or _find_request(args, kwargs))

    def allows(self, flag_name: str, ctx: RequestContext) -> bool:
        enabled = self.manager.is_enabled(flag_name, ctx)
        EVALS.labels(flag_name, str(enabled)).inc()
        if not enabled:
            logger.debug("flag %s is off for subject %s, short-circuiting", flag_name, ctx.subject_id)
        return enabled

    def wrap(self, flag_name: str, handler: Optional[Callable] = None):
        """Gate ``handler`` behind ``flag_name``; usable as ``@gate.wrap("Flag")``."""
        if handler is None:
            return functools.partial(self.wrap, flag_name)

        sig = inspect.signature(handler)
        inject = not _takes_request(sig)

        def check(args, kwargs) -> bool:
            request = kwargs.pop(REQUEST_PARAM, None) if inject else None
            return self.allows(flag_name, self.context_from_call(args, kwargs, request))

        if inspect.iscoroutinefunction(handler):
            @functools.wraps(handler)
            async def gated(*args, **kwargs):
                if not check(args, kwargs):
                    return self.on_disabled(flag_name)
                return await handler(*args, **kwargs)
        else:
            @functools.wraps(handler)
            def gated(*args, **kwargs):
                if not check(args, kwargs):
                    return self.on_disabled(flag_name)
                return handler(*args, **kwargs)

        if inject:
            gated.__signature__ = _with_request_param(sig)
        return gated

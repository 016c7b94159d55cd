import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FetchTimeout
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from pydantic import ValidationError

from flaggate.exceptions import ReloadError, ReloadErrorKind
from flaggate.metrics import GENERATION, RELOADS
from flaggate.models import FlagDefinition, FlagStore, RequestContext, RuleKind, TargetingRule, as_utc, utcnow
from flaggate.schemas import FlagSpec, PercentageOfRule, TimeWindowRule
from flaggate.services import rollout

logger = logging.getLogger(__name__)


class FeatureManager(Protocol):
    """Anything a gate can ask whether a flag is on."""

    def current(self) -> FlagStore: ...

    def is_enabled(self, name: str, ctx: RequestContext) -> bool: ...


class FlagSource(Protocol):
    """Supplies raw flag definitions; see ``flaggate.sources``."""

    def fetch(self) -> Any: ...


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err['msg']}" if loc else err["msg"]


def _iter_raw(raw: Any) -> Iterable[Tuple[str, Any]]:
    if isinstance(raw, Mapping):
        for name, body in raw.items():
            if isinstance(body, bool):
                # configuration-section shorthand: "ReverseEcho": true
                body = {"enabled": body}
            elif not isinstance(body, Mapping):
                raise ReloadError(ReloadErrorKind.MALFORMED, f"definition of {name!r} must be an object or a boolean", flag=name)
            yield name, {**body, "name": name}
    elif isinstance(raw, (list, tuple)):
        for body in raw:
            if not isinstance(body, Mapping):
                raise ReloadError(ReloadErrorKind.MALFORMED, "flag list entries must be objects")
            name = body.get("name", body.get("key"))
            yield name, body
    else:
        raise ReloadError(ReloadErrorKind.MALFORMED, f"expected a mapping or list of flags, got {type(raw).__name__}")


def compile_rule(name: str, spec: Any) -> TargetingRule:
    kind = RuleKind(spec.kind)
    if isinstance(spec, TimeWindowRule):
        start, end = as_utc(spec.start), as_utc(spec.end)
        if start is not None and end is not None and start > end:
            raise ReloadError(ReloadErrorKind.INVALID_RANGE, f"time window of {name!r} starts after it ends", flag=name)
        return TargetingRule(kind=kind, enabled=spec.enabled, start=start, end=end)
    if isinstance(spec, PercentageOfRule):
        if not 0 <= spec.percentage <= 100:
            raise ReloadError(ReloadErrorKind.INVALID_RANGE, f"rule percentage {spec.percentage} of {name!r} is outside 0..100", flag=name)
        return TargetingRule(kind=kind, enabled=spec.enabled, subject_key=spec.subject_key, percentage=spec.percentage)
    if kind is RuleKind.USER_IN_LIST:
        return TargetingRule(kind=kind, enabled=spec.enabled, values=frozenset(spec.users))
    if kind is RuleKind.GROUP_IN_LIST:
        return TargetingRule(kind=kind, enabled=spec.enabled, values=frozenset(spec.groups))
    value = spec.value
    if isinstance(value, list):
        value = tuple(value)
    return TargetingRule(kind=kind, enabled=spec.enabled, attr=spec.attr, op=spec.op, value=value)


def parse_definitions(raw: Any) -> List[FlagDefinition]:
    """Validate raw definitions; raise ReloadError on the first problem found."""
    seen = set()
    flags = []
    for name, body in _iter_raw(raw):
        if not isinstance(name, str) or not name:
            raise ReloadError(ReloadErrorKind.MALFORMED, "every flag needs a non-empty string name")
        if name in seen:
            raise ReloadError(ReloadErrorKind.DUPLICATE_NAME, f"flag {name!r} is defined more than once", flag=name)
        seen.add(name)
        try:
            spec = FlagSpec.model_validate(body)
        except ValidationError as exc:
            raise ReloadError(ReloadErrorKind.MALFORMED, f"flag {name!r}: {_first_error(exc)}", flag=name) from exc
        pct = spec.rollout_percentage
        if pct is not None and not 0 <= pct <= 100:
            raise ReloadError(ReloadErrorKind.INVALID_RANGE, f"rollout percentage {pct} of {name!r} is outside 0..100", flag=name)
        flags.append(
            FlagDefinition(
                name=name,
                enabled=spec.enabled,
                rules=tuple(compile_rule(name, rule) for rule in spec.rules),
                rollout_percentage=pct,
            )
        )
    return flags


def build_store(raw: Any, generation: int, loaded_at: Optional[datetime] = None) -> FlagStore:
    flags: Dict[str, FlagDefinition] = {flag.name: flag for flag in parse_definitions(raw)}
    return FlagStore(flags=MappingProxyType(flags), generation=generation, loaded_at=loaded_at)


class SnapshotManager:
    """Owns the published FlagStore and replaces it on reload.

    Readers get whatever store is published at the moment they call
    ``current()``; they never take the lock. Reloads are serialized by
    ``_lock`` so generations stay strictly increasing, and publishing is a
    single reference assignment, so a reader sees the old store or the new
    one and nothing in between.
    """

    def __init__(self, fetch_timeout: float = 2.0, clock: Callable[[], datetime] = utcnow, max_fetchers: int = 4):
        self.fetch_timeout = fetch_timeout
        self.max_fetchers = max_fetchers
        self._clock = clock
        self._store = FlagStore()
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._inflight: Dict[int, Future] = {}

    def current(self) -> FlagStore:
        return self._store

    @property
    def generation(self) -> int:
        return self._store.generation

    def is_enabled(self, name: str, ctx: RequestContext) -> bool:
        return rollout.is_enabled(self._store, name, ctx)

    def reload(self, raw: Any) -> int:
        """Publish a store built from ``raw`` and return its generation."""
        with self._lock:
            generation = self._store.generation + 1
            try:
                store = build_store(raw, generation, loaded_at=self._clock())
            except ReloadError as exc:
                RELOADS.labels("error").inc()
                logger.warning("flag reload rejected, keeping generation %d: %s", self._store.generation, exc)
                raise
            self._store = store
        RELOADS.labels("ok").inc()
        GENERATION.set(generation)
        logger.info("published flag store generation %d (%d flags)", generation, len(store))
        return generation

    def _submit(self, source: FlagSource) -> Future:
        # a running fetch cannot be cancelled: at most one per source
        with self._executor_lock:
            running = self._inflight.get(id(source))
            if running is not None and not running.done():
                raise ReloadError(ReloadErrorKind.SOURCE_UNAVAILABLE, f"previous fetch from {source!r} is still running")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_fetchers, thread_name_prefix="flaggate-fetch")
            future = self._executor.submit(source.fetch)
            self._inflight[id(source)] = future
        future.add_done_callback(lambda done: self._forget(id(source), done))
        return future

    def _forget(self, key: int, future: Future):
        with self._executor_lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def refresh(self, source: FlagSource, timeout: Optional[float] = None) -> int:
        """Fetch from ``source`` and reload; a failed or slow fetch counts as a failed reload.

        A fetch that outlives its timeout keeps running in the background; until
        it returns, further refreshes from the same source fail fast.
        """
        timeout = self.fetch_timeout if timeout is None else timeout
        try:
            future = self._submit(source)
        except ReloadError as exc:
            RELOADS.labels("error").inc()
            logger.warning("skipping refresh: %s", exc)
            raise
        try:
            raw = future.result(timeout=timeout)
        except FetchTimeout:
            future.cancel()
            RELOADS.labels("error").inc()
            logger.warning("fetch from %r timed out after %ss", source, timeout)
            raise ReloadError(ReloadErrorKind.SOURCE_UNAVAILABLE, f"fetch from {source!r} timed out after {timeout}s")
        except ReloadError as exc:
            RELOADS.labels("error").inc()
            logger.warning("source %r rejected its own payload: %s", source, exc)
            raise
        except Exception as exc:
            RELOADS.labels("error").inc()
            logger.warning("fetch from %r failed: %s", source, exc)
            raise ReloadError(ReloadErrorKind.SOURCE_UNAVAILABLE, f"fetch from {source!r} failed: {exc}") from exc
        return self.reload(raw)

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from flaggate.dependencies import gate, get_manager, get_source
from flaggate.exceptions import ReloadError
from flaggate.metrics import EVALS
from flaggate.schemas import EvaluationResult, FlagSummary, ReloadResult, StoreOut
from flaggate.services.rollout import explain
from flaggate.services.snapshot import SnapshotManager

router = APIRouter(tags=["flags"])


@router.get("/flags", response_model=StoreOut)
def list_flags(manager: SnapshotManager = Depends(get_manager)):
    store = manager.current()
    return {
        "generation": store.generation,
        "loaded_at": store.loaded_at,
        "flags": [FlagSummary(name=n, enabled=e, rule_count=c) for n, e, c in store.snapshot()],
    }


@router.post("/flags/reload", response_model=ReloadResult)
def reload_flags(
    payload: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = Body(None),
    manager: SnapshotManager = Depends(get_manager),
    source=Depends(get_source),
):
    # a body pushes definitions directly; without one, pull from the configured source
    if payload is None and source is None:
        raise HTTPException(status_code=409, detail="no flag source configured")
    try:
        if payload is not None:
            generation = manager.reload(payload)
        else:
            generation = manager.refresh(source)
    except ReloadError as exc:
        raise HTTPException(status_code=422, detail={"kind": exc.kind, "message": str(exc), "flag": exc.flag})
    return {"generation": generation, "flags": len(manager.current())}


@router.get("/evaluate/{key}", response_model=EvaluationResult)
def evaluate(
    key: str,
    request: Request,
    user_id: Optional[str] = Query(None, description="subject id, also read from X-User-Id"),
    manager: SnapshotManager = Depends(get_manager),
):
    ctx = gate.context_from_request(request)
    # one store for both the decision and the reported generation
    store = manager.current()
    enabled, reason = explain(store, key, ctx)
    EVALS.labels(key, str(enabled)).inc()
    return {"key": key, "enabled": enabled, "reason": reason, "generation": store.generation}

from fastapi import APIRouter, Depends

from flaggate.dependencies import get_manager
from flaggate.services.snapshot import SnapshotManager

router = APIRouter(tags=["health"])

@router.get("/healthz")
def health(manager: SnapshotManager = Depends(get_manager)):
    return {"status": "ok", "generation": manager.generation}

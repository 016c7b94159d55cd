from fastapi import APIRouter

from flaggate.dependencies import gate

router = APIRouter(prefix="/api", tags=["echo"])


@router.get("/echo/{input}")
@gate.wrap("ReverseEcho")
def echo(input: str):
    return input[::-1]

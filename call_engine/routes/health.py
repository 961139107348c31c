from fastapi import APIRouter

from call_engine.routes.ws import ACTIVE_CALLS

router = APIRouter()


@router.get("/")
def healthcheck() -> dict[str, object]:
    return {"status": "ok", "active_calls": len(ACTIVE_CALLS)}

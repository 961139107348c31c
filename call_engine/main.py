from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from call_engine.routes import calls, health, twilio, ws, openai as openai_routes
from call_engine.logging.flight_recorder import register_log_middleware


def create_app() -> FastAPI:
    app = FastAPI(title="Call Engine", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_log_middleware(app)

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(twilio.router, prefix="/twilio", tags=["twilio"])
    app.include_router(ws.router, tags=["realtime"])
    app.include_router(calls.router, prefix="/calls", tags=["calls"])
    app.include_router(openai_routes.router, prefix="/openai", tags=["openai"])

    return app


app = create_app()

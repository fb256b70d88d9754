from fastapi import FastAPI

from .auth import router as auth_router
from .matches import router as matches_router
from .offers import router as offers_router
from .presence import router as presence_router
from .safety import router as safety_router
from .suggestions import router as suggestions_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(auth_router, prefix="/auth", tags=["auth"])
    app.include_router(presence_router, tags=["presence"])
    app.include_router(offers_router, tags=["offers"])
    app.include_router(matches_router, tags=["matches"])
    app.include_router(suggestions_router, tags=["suggestions"])
    app.include_router(safety_router, tags=["safety"])


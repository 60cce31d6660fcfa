from fastapi import APIRouter

from runrelay.api.v1.endpoints import gate, health, runs

v1_router = APIRouter()
v1_router.include_router(health.router, tags=["health"])
v1_router.include_router(runs.router, tags=["runs"])
v1_router.include_router(gate.router, tags=["gate"])

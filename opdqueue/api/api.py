from fastapi import APIRouter
from opdqueue.api.v1 import tokens, doctors, departments

api_router = APIRouter()

api_router.include_router(tokens.router, prefix="/tokens", tags=["tokens"])
api_router.include_router(doctors.router, prefix="/doctors", tags=["doctors"])
api_router.include_router(departments.router, prefix="/departments", tags=["departments"])

from fastapi import APIRouter
from .v1 import prompts

api_router = APIRouter(prefix="/api", tags=["graphprompt"])

api_router.include_router(prompts.router, prefix="/v1", tags=["prompts"])

@api_router.get("/")
def read_root():
    return {"message": "graphprompt is running"}

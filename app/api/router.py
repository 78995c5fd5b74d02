from fastapi import APIRouter
from app.modules.availability.router import router as availability_router, search_router as availability_search_router

api_router = APIRouter()
api_router.include_router(availability_router, prefix="/provider", tags=["availability"])
api_router.include_router(availability_search_router, prefix="/availability", tags=["availability-search"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}

from fastapi import APIRouter

from rentbook.api.v1.availability import router as availability_router

api_router = APIRouter()

# --- Availability and catalog ---
api_router.include_router(availability_router)

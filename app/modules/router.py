# app/modules/router.py
from fastapi import APIRouter
from app.modules.memorychat.api.router import health as memorychat_health
from app.modules.memorychat.api.router import v1 as memorychat_router

router = APIRouter()
router.include_router(memorychat_router)
router.include_router(memorychat_health)

"""API v1 router aggregation"""
from fastapi import APIRouter

from giftfuture.api.v1 import checkout, gifts

api_router = APIRouter()

api_router.include_router(checkout.router, prefix="/checkout", tags=["Checkout"])
api_router.include_router(gifts.router, prefix="/gifts", tags=["Gifts"])

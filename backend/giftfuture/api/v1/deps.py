"""Shared route dependencies"""
from giftfuture.services.fulfillment import (
    FulfillmentOrchestrator,
    get_fulfillment_orchestrator,
)


async def get_orchestrator() -> FulfillmentOrchestrator:
    return await get_fulfillment_orchestrator()

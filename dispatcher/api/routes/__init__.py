from fastapi import APIRouter

from dispatcher.api.routes import health, slack_events

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])

slack_router = APIRouter()

slack_router.include_router(slack_events.router, tags=["slack"])

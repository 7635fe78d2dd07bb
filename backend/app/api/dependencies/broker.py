"""Publisher dependency backed by the app-wide broker connection."""

from fastapi import Request

from app.workers.publisher import JobPublisher


def get_publisher(request: Request) -> JobPublisher:
    """FastAPI dependency that wraps the broker created in the app lifespan."""
    return JobPublisher(request.app.state.broker)

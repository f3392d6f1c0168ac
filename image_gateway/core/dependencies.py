from fastapi import Request

from image_gateway.gateway.orchestrator import ImageGateway


def get_gateway(request: Request) -> ImageGateway:
    """The ImageGateway built by the app lifespan."""
    return request.app.state.gateway

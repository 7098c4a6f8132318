from fastapi import Request

from ..services.container import MobileServices


def get_services(request: Request) -> MobileServices:
    return request.app.state.services

from fastapi import Request

from app.services.signaling_system import SignalingSystem


def get_signaling_system(request: Request) -> SignalingSystem:
    return request.app.state.signaling_system

"""
API dependencies: payment use-case services

The services are built once per application lifespan and kept on app.state;
tests swap them through dependency_overrides.
"""
from fastapi import Request

from application.services.payment_service import PaymentApplicationService


def get_payment_service(request: Request) -> PaymentApplicationService:
    return request.app.state.payment_service

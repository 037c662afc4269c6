from typing import Optional

from fastapi import Header, Request

from service_orders.workflow import ServiceOrderWorkflow


def get_workflow(request: Request) -> ServiceOrderWorkflow:
    return request.app.state.workflow


def get_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    # forwarded verbatim; the authorization service decides what it accepts
    return authorization

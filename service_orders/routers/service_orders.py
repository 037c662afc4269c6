from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from service_orders.deps import get_token, get_workflow
from service_orders.models import OrderStatus
from service_orders.schemas import CreateServiceOrderReq, StatusFilter, UpdateServiceOrderReq

router = APIRouter(prefix="/serviceorder", tags=["serviceorder"])


@router.post("/create", status_code=201)
def create_service_order(body: CreateServiceOrderReq, token=Depends(get_token), workflow=Depends(get_workflow)):
    order = workflow.create(token, body.service_order.model_dump())
    return {
        "message": "Service order created successfully.",
        "serviceOrder": order.to_dict(),
    }


@router.put("/update")
def update_service_order(body: UpdateServiceOrderReq, token=Depends(get_token), workflow=Depends(get_workflow)):
    workflow.update_status(token, body.service_order.model_dump())
    return {"message": "Service order updated successfully."}


@router.get("/list")
def list_service_orders(
    client_id: Optional[int] = Query(None),
    initial_date: Optional[datetime] = Query(None),
    final_date: Optional[datetime] = Query(None),
    status: Optional[StatusFilter] = Query(None),
    total_value_gte: Optional[float] = Query(None),
    total_value_lte: Optional[float] = Query(None),
    token=Depends(get_token),
    workflow=Depends(get_workflow),
):
    orders = workflow.list_orders(
        token,
        client_id=client_id,
        initial_date_from=initial_date,
        initial_date_to=final_date,
        status=OrderStatus(status) if status else None,
        total_value_gte=total_value_gte,
        total_value_lte=total_value_lte,
    )
    return {
        "message": "Service orders listed successfully.",
        "serviceOrders": [o.to_dict() for o in orders],
    }

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from service_orders import config
from service_orders.db import PostgresOrderRepository, init_db
from service_orders.errors import ServiceOrderError
from service_orders.messaging.broker import RabbitMQPublisher, ReplyConsumer
from service_orders.messaging.gateways import AuthorizationGateway, StockGateway
from service_orders.messaging.registry import CorrelationRegistry
from service_orders.messaging.rpc import RpcBridge
from service_orders.repository import InMemoryOrderRepository
from service_orders.routers.service_orders import router as service_orders_router
from service_orders.workflow import ServiceOrderWorkflow

logger = logging.getLogger(__name__)


def build_repository():
    if config.STORE_BACKEND == "memory":
        logger.info("Using in-memory service order store")
        return InMemoryOrderRepository()
    init_db()
    return PostgresOrderRepository()


@asynccontextmanager
async def broker_lifespan(app: FastAPI):
    """Wire broker, registry, gateways and store; tear them down on shutdown"""
    config.configure_logging()
    registry = CorrelationRegistry()
    publisher = RabbitMQPublisher(config.RABBIT_URL)
    bridge = RpcBridge(publisher, registry)
    auth_gateway = AuthorizationGateway(bridge)
    stock_gateway = StockGateway(bridge)

    consumer = ReplyConsumer(
        config.RABBIT_URL,
        registry,
        [auth_gateway.reply, auth_gateway.verification_reply, stock_gateway.reply],
    )
    try:
        consumer.start()
        app.state.workflow = ServiceOrderWorkflow(build_repository(), auth_gateway, stock_gateway)
        yield
    finally:
        consumer.stop()
        publisher.close()


def create_app(workflow: Optional[ServiceOrderWorkflow] = None) -> FastAPI:
    """
    Build the API. With an explicit workflow nothing is wired at startup
    (local tooling and tests); otherwise the broker lifespan owns the wiring.
    """
    app = FastAPI(title="Service Order API", lifespan=None if workflow else broker_lifespan)
    if workflow is not None:
        app.state.workflow = workflow

    app.include_router(service_orders_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceOrderError)
    async def service_order_error(request: Request, exc: ServiceOrderError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def invalid_fields(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "INVALID_FIELDS", "message": "Invalid service order structure"},
        )

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()


def main():
    config.configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=3001)


if __name__ == "__main__":
    main()

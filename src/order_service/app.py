"""
Order Service API - HTTP and WebSocket surface of the execution engine

Routes:
- POST /api/orders/execute          submit a market order
- GET  /api/orders/{id}             order lookup
- GET  /api/orders/{id}/history     status events in order
- GET  /api/orders?limit=N          most recent orders
- GET  /api/queue/metrics           job counts and live subscribers
- GET  /health                      liveness
- WS   /api/orders/{id}/ws          status stream (history, then live)
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..execution_engine.order_schemas import utc_now
from ..execution_engine.exceptions import (
    ExecutionError, InfrastructureError, OrderNotFoundError, OrderValidationError,
    QueueClosedError
)
from .engine import ExecutionEngine, ExecutionConfig
from .transport import WebSocketTransport


class ExecuteOrderRequest(BaseModel):
    """Body of POST /api/orders/execute"""

    type: str
    token_in: str = Field(alias="tokenIn")
    token_out: str = Field(alias="tokenOut")
    amount_in: float = Field(alias="amountIn")
    slippage: Optional[float] = None


class ExecuteOrderResponse(BaseModel):
    orderId: str
    status: str


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'error': error, 'message': message})


def create_app(engine: Optional[ExecutionEngine] = None,
               config: Optional[ExecutionConfig] = None) -> FastAPI:
    """
    Build the FastAPI application around an engine

    The engine is started and stopped with the application lifespan.
    """
    engine = engine or ExecutionEngine(config or ExecutionConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        logger.info("Order service online")
        try:
            yield
        finally:
            logger.info("Order service shutting down")
            await engine.stop()

    app = FastAPI(
        title="Order Execution Engine",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.engine = engine

    # --- Error mapping ---

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request", str(exc.errors()))

    @app.exception_handler(OrderValidationError)
    async def handle_order_validation(request: Request, exc: OrderValidationError):
        return _error(400, str(exc), str(exc))

    @app.exception_handler(OrderNotFoundError)
    async def handle_not_found(request: Request, exc: OrderNotFoundError):
        return _error(404, "Order not found", str(exc))

    @app.exception_handler(QueueClosedError)
    async def handle_queue_closed(request: Request, exc: QueueClosedError):
        return _error(503, "Service unavailable", str(exc))

    @app.exception_handler(InfrastructureError)
    async def handle_infrastructure(request: Request, exc: InfrastructureError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error(500, "Internal error", str(exc))

    @app.exception_handler(ExecutionError)
    async def handle_execution_error(request: Request, exc: ExecutionError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error(500, "Internal error", str(exc))

    # --- Routes ---

    @app.post("/api/orders/execute", status_code=201, response_model=ExecuteOrderResponse)
    async def execute_order(request: ExecuteOrderRequest):
        order = await engine.submit_order(
            order_type=request.type,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount_in,
            slippage=request.slippage if request.slippage is not None else 0.01
        )
        return {'orderId': order.order_id, 'status': order.status.value}

    @app.get("/api/orders/{order_id}/history")
    async def get_order_history(order_id: str) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in engine.get_history(order_id)]

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str) -> Dict[str, Any]:
        return engine.get_order(order_id).to_dict()

    @app.get("/api/orders")
    async def list_orders(limit: int = Query(100, ge=1, le=1000)) -> List[Dict[str, Any]]:
        return [order.to_dict() for order in engine.list_orders(limit)]

    @app.get("/api/queue/metrics")
    async def queue_metrics() -> Dict[str, int]:
        metrics = await engine.get_metrics()
        metrics['websocketConnections'] = metrics.pop('subscribers')
        return metrics

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {'status': 'ok', 'timestamp': utc_now().isoformat()}

    @app.websocket("/api/orders/{order_id}/ws")
    async def order_status_stream(websocket: WebSocket, order_id: str):
        await websocket.accept()

        if engine.order_store.get(order_id) is None:
            await websocket.send_json({'error': 'Order not found'})
            await websocket.close()
            return

        transport = WebSocketTransport(websocket)
        subscription = engine.fanout.subscribe(order_id, transport, start=False)
        try:
            # Live events published from here on are held until the history is queued
            history = engine.order_store.list_history(order_id)
            order = engine.order_store.get(order_id)
            subscription.start(backfill=history, greeting={
                'order_id': order_id,
                'status': order.status.value,
                'timestamp': utc_now().isoformat(),
                'message': 'Connected to order status stream'
            })

            while True:
                message = await websocket.receive()
                if message['type'] == 'websocket.disconnect':
                    break
        finally:
            transport.mark_closed()
            engine.fanout.unsubscribe(subscription)

    return app

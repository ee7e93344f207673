"""
Demo client for the order execution engine

Submits a batch of market orders concurrently, streams each order's status
over its WebSocket and prints the routing decision and final outcome.

Usage:
    python scripts/demo_client.py            # 5 orders against localhost:3000
    API_BASE=http://host:3000 python scripts/demo_client.py
"""

import asyncio
import json
import os
import sys

import httpx
import websockets
from dotenv import load_dotenv

load_dotenv()

API_BASE = os.getenv('API_BASE', 'http://localhost:3000')
WS_BASE = API_BASE.replace('http://', 'ws://').replace('https://', 'wss://')

DEMO_ORDERS = [
    {'type': 'market', 'tokenIn': 'SOL', 'tokenOut': 'USDC', 'amountIn': 100, 'slippage': 0.01},
    {'type': 'market', 'tokenIn': 'USDC', 'tokenOut': 'SOL', 'amountIn': 5000, 'slippage': 0.02},
    {'type': 'market', 'tokenIn': 'SOL', 'tokenOut': 'BONK', 'amountIn': 10, 'slippage': 0.01},
    {'type': 'market', 'tokenIn': 'JUP', 'tokenOut': 'USDC', 'amountIn': 250, 'slippage': 0.005},
    {'type': 'market', 'tokenIn': 'RAY', 'tokenOut': 'SOL', 'amountIn': 40, 'slippage': 0.01},
]


async def submit_order(client: httpx.AsyncClient, order: dict) -> str:
    response = await client.post(f"{API_BASE}/api/orders/execute", json=order)
    response.raise_for_status()
    order_id = response.json()['orderId']
    print(f"📨 Submitted {order['amountIn']} {order['tokenIn']} -> {order['tokenOut']}: {order_id}")
    return order_id


async def stream_status(order_id: str) -> dict:
    """Print status updates until the order is confirmed or failed"""
    short_id = order_id[:8]
    last = {}
    async with websockets.connect(f"{WS_BASE}/api/orders/{order_id}/ws") as ws:
        async for raw in ws:
            update = json.loads(raw)
            if 'error' in update and 'status' not in update:
                print(f"[{short_id}] ❌ {update['error']}")
                return update

            status = update.get('status')
            if update.get('routing'):
                routing = update['routing']
                quotes = ", ".join(
                    f"{venue}: {quote['output_amount']:.4f}" if 'output_amount' in quote
                    else f"{venue}: {quote.get('error')}"
                    for venue, quote in routing.items() if venue != 'selected'
                )
                print(f"[{short_id}] 🔀 {quotes} -> {routing['selected']}")
            elif update.get('message'):
                print(f"[{short_id}] {status}: {update['message']}")
            else:
                print(f"[{short_id}] {status}")

            last = update
            if status == 'confirmed':
                print(f"[{short_id}] ✅ {update['executed_amount']:.4f} via {update['venue']} "
                      f"tx={update['tx_hash'][:16]}...")
                return update
            if status == 'failed':
                print(f"[{short_id}] ❌ {update.get('error')}")
                return update
    return last


async def main() -> int:
    async with httpx.AsyncClient(timeout=10.0) as client:
        health = await client.get(f"{API_BASE}/health")
        health.raise_for_status()

        order_ids = await asyncio.gather(*(submit_order(client, order) for order in DEMO_ORDERS))
        results = await asyncio.gather(*(stream_status(order_id) for order_id in order_ids))

        metrics = (await client.get(f"{API_BASE}/api/queue/metrics")).json()

    confirmed = sum(1 for result in results if result.get('status') == 'confirmed')
    print(f"\n📊 {confirmed}/{len(results)} confirmed; queue metrics: {metrics}")
    return 0 if confirmed else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

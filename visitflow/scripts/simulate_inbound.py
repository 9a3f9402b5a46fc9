"""
Simulate an inbound WhatsApp message via the Z-API webhook.

Usage:
    python scripts/simulate_inbound.py --text "quero visitar amanhã às 15h"
    python scripts/simulate_inbound.py --text "IMV-901"
    python scripts/simulate_inbound.py --status READ --message-id 3EB0C767D26A1D
"""
import argparse
import asyncio
import logging
import time
import uuid

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def simulate_message(phone: str, name: str, text: str, token: str):
    """Send a text message in Z-API's ReceivedCallback format."""
    payload = {
        "phone": phone,
        "chatName": name,
        "senderName": name,
        "isGroup": False,
        "fromMe": False,
        "messageId": f"SIM{uuid.uuid4().hex[:16].upper()}",
        "momment": int(time.time() * 1000),
        "text": {"message": text},
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhook/zapi",
            params={"type": "message"},
            json=payload,
            headers={"X-Webhook-Token": token},
        )
        logger.info("Message webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_status(message_id: str, status: str, token: str):
    """Send a delivery status callback."""
    payload = {"ids": [message_id], "status": status, "type": "MessageStatusCallback"}
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhook/zapi",
            params={"type": "message-status"},
            json=payload,
            headers={"X-Webhook-Token": token},
        )
        logger.info("Status webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate inbound WhatsApp traffic")
    parser.add_argument("--phone", default="5511987654321")
    parser.add_argument("--name", default="Cliente Teste")
    parser.add_argument("--text", default="Olá, quero agendar uma visita")
    parser.add_argument("--token", default="")
    parser.add_argument("--status", default=None, help="Send a status callback instead (e.g. READ)")
    parser.add_argument("--message-id", default=None)
    args = parser.parse_args()

    if args.status:
        if not args.message_id:
            parser.error("--status requires --message-id")
        await simulate_status(args.message_id, args.status, args.token)
        return

    logger.info("Simulating message from %s***: %s", args.phone[:6], args.text)
    await simulate_message(args.phone, args.name, args.text, args.token)


if __name__ == "__main__":
    asyncio.run(main())

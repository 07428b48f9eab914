#!/usr/bin/env python3
"""
Inference Gateway - Basic Usage Example

Ask one question, then switch the session to an on-device model.
"""

import asyncio

from inference_gateway import BackendKind, Gateway, GatewayFactory, GatewayConfig


async def main():
    config = GatewayConfig(kind=BackendKind.OLLAMA, model="llama3.2")

    async with Gateway(GatewayFactory(), config) as gateway:
        gateway.backend.add_listener(lambda s: print(f"[state] {s.display_text}"))

        await gateway.backend.test_connection()
        print("🩺  Gateway connected!\n")

        question = "What is my average heart rate?"
        context = "HR: 72bpm avg"
        print(f"Question: {question}\n")

        response = await gateway.backend.send_message(question, context)
        print("="*60)
        print(response.content)
        print("="*60)
        print(f"Response time: {response.response_time:.2f}s, tokens: {response.token_count}")

        # Same session, local model; the factory owns the runtime and store
        local = config.replace(kind=BackendKind.ON_DEVICE, model="medgemma-4b")
        backend = await gateway.reconfigure(local)
        await backend.wait_ready()
        print(f"\nOn-device status: {backend.snapshot().display_text}")


if __name__ == "__main__":
    asyncio.run(main())

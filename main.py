#!/usr/bin/env python3
"""
Inference Gateway - CLI Interface
"""

import asyncio
import sys
from pathlib import Path

from loguru import logger

from inference_gateway import Gateway, GatewayFactory, load_config
from inference_gateway.errors import GatewayError
from inference_gateway.utils import configure_logging, format_duration, truncate


async def print_status(gateway: Gateway):
    backend = gateway.backend
    snapshot = backend.snapshot()
    capabilities = await backend.get_capabilities()

    print(f"\n📡 Backend: {backend.kind.value}")
    print(f"   Status: {snapshot.display_text}")
    if backend.last_error is not None:
        print(f"   Last error: {backend.last_error}")
    print(f"   Models: {', '.join(capabilities.supported_models)}")
    print(f"   Context: {capabilities.max_tokens} tokens")
    print(f"   Images: {'yes' if capabilities.supports_images else 'no'}")


async def main():
    """Main CLI entry point."""
    configure_logging("INFO")

    config_path = Path(sys.argv[1] if len(sys.argv) > 1 else "config.yaml")
    try:
        config = load_config(config_path)
    except GatewayError as e:
        logger.error(f"{e}. Please create it from config.example.yaml.")
        return

    context_path = Path(sys.argv[2]) if len(sys.argv) > 2 else None
    context = context_path.read_text() if context_path and context_path.exists() else ""

    logger.info("Initializing gateway...")
    gateway = Gateway(GatewayFactory(), config)

    try:
        await gateway.backend.test_connection()
    except GatewayError as e:
        logger.error(f"Failed to connect: {e}")
        logger.error(e.recovery_suggestion)

    print("\n" + "="*60)
    print("🩺  INFERENCE GATEWAY")
    print("="*60)
    print("\nCommands:")
    print("  - Type your question to chat")
    print("  - 'status' - Show connection status and capabilities")
    print("  - 'retry' - Test the connection again")
    print("  - 'quit' or 'exit' - Exit the program")
    print("\n" + "="*60 + "\n")

    while True:
        try:
            question = input("\n🤔 You: ").strip()

            if not question:
                continue

            if question.lower() in ["quit", "exit", "q"]:
                print("\n👋 Goodbye!")
                break

            if question.lower() == "status":
                await print_status(gateway)
                continue

            if question.lower() == "retry":
                await gateway.backend.test_connection()
                print(f"\n✅ {gateway.backend.snapshot().display_text}")
                continue

            logger.debug(f"Prompt: {truncate(question, 80)}")
            print("\n🤖 Assistant: ", end="", flush=True)

            loop = asyncio.get_running_loop()
            started = loop.time()
            async with gateway.backend.send_message_streaming(question, context) as stream:
                async for fragment in stream:
                    print(fragment, end="", flush=True)

            print(f"\n\n⏱️  {format_duration(loop.time() - started)}")

        except KeyboardInterrupt:
            print("\n\n👋 Goodbye!")
            break
        except GatewayError as e:
            logger.error(f"Error: {e}")
            print(f"\n❌ {e}\n💡 {e.recovery_suggestion}\n")

    await gateway.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n👋 Goodbye!")


if __name__ == "__main__":
    run()

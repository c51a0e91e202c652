"""Streaming example: tool calls from a storefront assistant.

Demonstrates:
- Describing tools with tool_from_function
- Consuming a chunked stream with StreamCallbacks
- Reading the reassembled tool calls from the StreamResult

Usage:
    uv run --env-file=.env examples/storefront_stream_example.py --provider glm
    uv run examples/storefront_stream_example.py --provider qwen --trace
"""

import argparse
import asyncio

from coderelay.cli import configure_logging
from coderelay.client import StreamCallbacks
from coderelay.message import system, user
from coderelay.provider import default_policy
from coderelay.tools import tool_from_function


def get_menu_items(category: str, max_results: int = 10):
    """Get menu items by category."""


def check_allergens(item_name: str):
    """Check allergen information for a menu item."""


TOOLS = [
    tool_from_function(get_menu_items, {"category": "Menu category, e.g. Snacks"}),
    tool_from_function(check_allergens, {"item_name": "Exact menu item name"}),
]


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from coderelay.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def main(provider_name: str, question: str):
    _, provider = default_policy().resolve(provider_name)

    callbacks = StreamCallbacks(
        on_reasoning_start=lambda: print("[thinking] ", end="", flush=True),
        on_reasoning=lambda text: print(text, end="", flush=True),
        on_content_start=lambda: print("\n[answer] ", end="", flush=True),
        on_content=lambda text: print(text, end="", flush=True),
    )
    result = await provider.stream(
        [
            system("You help customers of a snack shop. Use the tools to look things up."),
            user(question),
        ],
        callbacks=callbacks,
        tools=TOOLS,
    )

    print(f"\n[finish_reason] {result.finish_reason}")
    for index, call in result.tool_calls.items():
        print(f"[tool {index}] {call.function_name}({call.parsed_arguments()}) id={call.id}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--provider", choices=["morph", "glm", "qwen"], default="glm")
    parser.add_argument("--question", default="What snacks do you have without peanuts?")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    configure_logging()
    if args.trace:
        setup_tracing("storefront-example")
    asyncio.run(main(args.provider, args.question))

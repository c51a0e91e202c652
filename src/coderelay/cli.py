import argparse
import asyncio
import logging
import sys

from coderelay.agent import CodeAgent, CodeTask
from coderelay.client import StreamCallbacks
from coderelay.dispatcher import ExecutionDispatcher
from coderelay.errors import ConfigurationError, TransportError
from coderelay.execution import ExecutionRequest, Language, SandboxConfig
from coderelay.provider import default_policy


def configure_logging(level: int = logging.INFO, log_file: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="coderelay")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--log-file", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("exec", help="Run a file in the sandbox")
    run.add_argument("file")
    run.add_argument(
        "--language", choices=[lang.value for lang in Language], default="auto",
    )
    run.add_argument("--timeout-ms", type=int, default=30_000)
    run.add_argument("--allow-network", action="store_true")
    run.add_argument("--writable", action="store_true")

    gen = sub.add_parser("generate", help="Generate code from a description")
    gen.add_argument("description")
    gen.add_argument("--provider", default=None)
    gen.add_argument("--sandbox", action="store_true")
    gen.add_argument("--stream", action="store_true")
    return parser


async def _exec(args) -> int:
    with open(args.file) as f:
        code = f.read()
    config = SandboxConfig(
        timeout_ms=args.timeout_ms,
        allow_network=args.allow_network,
        read_only=not args.writable,
    )
    result = await ExecutionDispatcher().execute(ExecutionRequest(
        code=code, language=Language(args.language), config=config,
    ))
    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)
    return result.exit_code


async def _generate(args) -> int:
    agent = CodeAgent(default_policy(), provider=args.provider)
    callbacks = None
    if args.stream:
        callbacks = StreamCallbacks(
            on_content=lambda text: print(text, end="", flush=True),
        )
    result = await agent.generate_code(
        CodeTask(description=args.description, sandbox=args.sandbox, stream=args.stream),
        callbacks=callbacks,
    )
    if args.stream:
        print()
    else:
        print(result.code)
    if result.execution_result is not None:
        print(f"\n--- exit code {result.execution_result.exit_code} ---")
        print(result.execution_result.stdout, end="")
        print(result.execution_result.stderr, end="", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)
    handler = _exec if args.command == "exec" else _generate
    try:
        return asyncio.run(handler(args))
    except (ConfigurationError, TransportError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())

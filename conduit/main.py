"""conduit entry point.

Runs one task against the configured endpoint with no tools and streams
the model's text to stdout:

    Settings -> LLMConfig/AgentConfig -> Gateway -> AgentRunner
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from conduit.api.gateway import Gateway
from conduit.api.runner import AgentRunner
from conduit.api.tools import ToolCatalog
from conduit.auth import (
    CODEX_ACCESS_TOKEN,
    CODEX_ACCOUNT_ID,
    OAUTH_ACCESS_TOKEN,
    OAUTH_REFRESH_TOKEN,
    MemorySecretStore,
)
from conduit.config import Settings
from conduit.log_sink import LogSink, LogSinkHandler

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> LogSink:
    """basicConfig to stderr plus a capped sink mirroring every record."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    sink = LogSink(settings.log_sink_capacity)
    logging.getLogger().addHandler(LogSinkHandler(sink))
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return sink


def seed_store(settings: Settings) -> MemorySecretStore:
    """Secret store pre-filled from the environment."""
    seeds = {
        # A token passed via CONDUIT_API_KEY doubles as the OAuth access token
        OAUTH_ACCESS_TOKEN: settings.api_key if settings.auth_method == "oauth" else "",
        OAUTH_REFRESH_TOKEN: settings.oauth_refresh_token,
        CODEX_ACCESS_TOKEN: settings.codex_access_token,
        CODEX_ACCOUNT_ID: settings.codex_account_id,
    }
    return MemorySecretStore({k: v for k, v in seeds.items() if v})


async def run(task: str, settings: Settings) -> int:
    llm_config = settings.llm_config()
    agent_config = settings.agent_config()

    store = seed_store(settings)
    gateway = Gateway.create(llm_config, store)
    runner = AgentRunner(gateway, ToolCatalog(), agent_config)

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except NotImplementedError:
        logger.debug("Signal handlers unsupported on this platform")

    logger.info(
        "conduit starting (provider=%s, model=%s)", gateway.adapter.name, llm_config.model
    )
    try:
        result = await runner.run_task(
            task,
            on_text_delta=lambda chunk: print(chunk, end="", flush=True),
            cancel=cancel,
        )
    finally:
        await gateway.aclose()

    print()
    usage = result.usage
    logger.info(
        "%s (%d steps, %d API calls, %d in / %d out tokens)",
        result.message,
        result.steps,
        usage.api_calls,
        usage.input_tokens,
        usage.output_tokens,
    )
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> None:
    """Entry point -- parse arguments and settings, run one task."""
    parser = argparse.ArgumentParser(prog="conduit", description=__doc__.splitlines()[0])
    parser.add_argument("task", help="task text sent to the model")
    args = parser.parse_args(argv)

    settings = Settings()
    configure_logging(settings)
    sys.exit(asyncio.run(run(args.task, settings)))


if __name__ == "__main__":
    main()

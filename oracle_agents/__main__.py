"""Run the provider, buyer and oracle network: ``python -m oracle_agents``."""

import argparse
import asyncio
import logging
import signal
from typing import List

from .config import Config, load_yaml_overrides
from .health_server import HealthServer
from .orchestrator import AgentOrchestrator

logger = logging.getLogger("oracle_agents")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Oracle agent network")
    parser.add_argument("--config", type=str, help="YAML overlay (same as ORACLE_AGENTS_CONFIG)")
    parser.add_argument("--oracles", type=int, help="Number of oracle nodes (minimum 3)")
    parser.add_argument("--port", type=int, help="Health endpoint port")
    parser.add_argument("--log-level", type=str, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--show-config", action="store_true", help="Print configuration and exit")
    return parser.parse_args(argv)


def check_config(cfg: Config) -> List[str]:
    """Validate the configuration and warn once when it is incomplete."""
    errors = cfg.validate()
    if errors:
        logger.warning(
            f"⚠️ {len(errors)} configuration error(s), affected roles start degraded: " + "; ".join(errors)
        )
    return errors


async def run(orchestrator, host: str, port: int):
    """Start everything and run until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    server = HealthServer(orchestrator, host, port)
    await orchestrator.start()
    await server.start()

    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()
        await server.stop()


def main(argv=None):
    args = parse_args(argv)

    overrides = load_yaml_overrides(args.config)
    if args.oracles:
        overrides["oracle_count"] = args.oracles
    if args.port:
        overrides["health_port"] = args.port
    if args.log_level:
        overrides["log_level"] = args.log_level
    cfg = Config(overrides)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.show_config:
        cfg.display()
        check_config(cfg)
        return

    check_config(cfg)
    orchestrator = AgentOrchestrator(cfg)
    asyncio.run(run(orchestrator, cfg.health_host, cfg.health_port))


if __name__ == "__main__":
    main()

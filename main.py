#!/usr/bin/env python3
"""
StarChat - Persona Chat Backend
===============================

Main entry point for the StarChat HTTP service.

Usage:
    python main.py                  # Serve with settings from config.yaml
    python main.py --mock-llm       # Scripted replies, no API key needed
    python main.py --seed-demo      # Create a demo persona and conversation first
    python main.py --help           # Show help
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).parent))

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from api.client import LLMConfig, MockLLMClient, OpenAICompatibleClient
from core.chat_service import ChatService
from core.streaming import StreamCoordinator
from infra.config import AppConfig
from infra.database import ChatDatabase, Persona
from infra.logging import configure_logging, get_logger
from infra.service_bus import create_app, run_server
from memory.store import MemoryStore


# Setup rich console
console = Console()


def print_banner(config: AppConfig, mock: bool) -> None:
    """Print the StarChat banner."""
    banner = Text()
    banner.append("StarChat", style="bold cyan")
    banner.append(" - Persona Chat Backend\n", style="dim")

    if mock:
        banner.append("Generation: mock\n\n", style="yellow")
    else:
        banner.append(f"Generation: {config.llm_model}\n\n", style="green")

    banner.append("Listening on ", style="dim")
    banner.append(f"http://{config.server_host}:{config.server_port}", style="bold green")
    banner.append(f" | db: {config.database_path}", style="dim")

    console.print(Panel(banner, title="Welcome", border_style="blue"))


def seed_demo(database: ChatDatabase) -> None:
    """Create a demo persona and a conversation with it."""
    persona = database.create_persona(Persona(
        name="Luna",
        english_name="Luna",
        gender="female",
        nationality="Korea",
        occupation="Singer",
        introduction="A cheerful pop singer who loves talking with fans.",
        style_features="Warm, playful, uses the occasional emoji.",
    ))
    conversation = database.create_conversation(user_id=1, persona_id=persona.id, title="Demo chat")
    console.print(f"[green]Demo conversation {conversation.id} with persona {persona.name}[/green]")


def build_app(config: AppConfig, use_mock: bool, database: ChatDatabase):
    """Wire storage, memory, generation and the HTTP surface together."""
    memory = MemoryStore()

    if use_mock:
        client = MockLLMClient()
    else:
        client = OpenAICompatibleClient(LLMConfig(
            base_url=config.llm_base_url,
            model=config.llm_model,
            api_key_env=config.llm_api_key_env,
            timeout_seconds=config.llm_timeout_seconds,
        ))

    coordinator = StreamCoordinator(database, memory, long_term_weight=config.long_term_weight)
    service = ChatService(database, memory, client, coordinator)
    return create_app(service, coordinator)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="StarChat - Persona Chat Backend"
    )
    parser.add_argument(
        "--config", "-c",
        default="config.yaml",
        help="Path to configuration file"
    )
    parser.add_argument("--host", help="Override server.host")
    parser.add_argument("--port", type=int, help="Override server.port")
    parser.add_argument(
        "--mock-llm",
        action="store_true",
        help="Use mock LLM for testing (no API key needed)"
    )
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Create a demo persona and conversation on startup"
    )
    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default from config)"
    )

    args = parser.parse_args()

    config = AppConfig.load(args.config)
    if args.host:
        config.server_host = args.host
    if args.port:
        config.server_port = args.port
    if args.log_level:
        config.log_level = args.log_level

    # Setup logging
    configure_logging(level=getattr(logging, config.log_level, logging.INFO), file=config.is_production)
    logger = get_logger("main")

    database = ChatDatabase(config.database_path)
    try:
        database.initialize()
        if args.seed_demo:
            seed_demo(database)

        app = build_app(config, args.mock_llm, database)
        print_banner(config, args.mock_llm)
        asyncio.run(run_server(app, config.server_host, config.server_port, config.log_level.lower()))
        return 0

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    finally:
        database.close()


if __name__ == "__main__":
    sys.exit(main())

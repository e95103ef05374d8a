"""Command-line entry point: research one topic and print the result as JSON."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog
from pydantic import ValidationError

from topic_research.core.circuit_breaker import BreakerRegistry
from topic_research.core.config import Settings
from topic_research.core.errors import TopicResearchFailed
from topic_research.core.events import StructlogEventSink
from topic_research.core.logging_setup import configure_logging
from topic_research.models.schemas import TopicResearchResult, UserContext
from topic_research.pipeline import TopicResearchPipeline
from topic_research.services.completion import OpenAICompletionService
from topic_research.tools.searxng import SearxngGateway

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="topic-research",
        description="Research a topic and print learning content, sources and subtopics as JSON.",
    )
    parser.add_argument("topic", help="Topic to research")
    parser.add_argument(
        "--max-depth",
        type=int,
        default=None,
        help="Subtopic recursion depth (default: DEFAULT_MAX_DEPTH setting)",
    )
    parser.add_argument("--level", default=None, help="Learner level, e.g. beginner")
    parser.add_argument(
        "--interest",
        action="append",
        default=[],
        dest="interests",
        help="Learner interest; repeat for several",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Overall timeout in seconds")
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> TopicResearchResult:
    breakers = BreakerRegistry.from_settings(settings)
    completion = OpenAICompletionService.from_settings(settings, breakers)
    user_context = None
    if args.level or args.interests:
        user_context = UserContext(level=args.level, interests=args.interests)

    try:
        async with SearxngGateway.from_settings(settings, breakers) as gateway:
            pipeline = TopicResearchPipeline(gateway, completion, settings, StructlogEventSink())
            return await pipeline.research(
                args.topic,
                max_depth=args.max_depth,
                user_context=user_context,
                timeout=args.timeout,
            )
    finally:
        await completion.aclose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return 1
    configure_logging(settings.LOG_LEVEL)

    try:
        result = asyncio.run(run(args, settings))
    except TopicResearchFailed as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except TimeoutError:
        logger.error("cli.timeout", topic=args.topic, timeout=args.timeout)
        print(f"error: research timed out after {args.timeout}s", file=sys.stderr)
        return 1

    print(result.model_dump_json(by_alias=True, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())

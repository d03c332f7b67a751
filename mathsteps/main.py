"""CLI/API entrypoint for MathSteps."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional

import uvicorn

from mathsteps.api import create_app
from mathsteps.api.history import HistoryLoadError
from mathsteps.llm.parser import ResponseParseError
from mathsteps.nodes.explainer import (
    ExplanationFailedError,
    ExplanationGenerator,
    NoResponseError,
    NotConfiguredError,
)
from mathsteps.nodes.recognizer import ProblemRecognizer, RecognitionFailedError
from mathsteps.state import result_to_dict
from mathsteps.tools.images import ImageUnavailableError
from mathsteps.utils.config_loader import ConfigError, ModelsConfig, load_models_config
from mathsteps.utils.deadline import RequestAbortedError
from mathsteps.utils.logger import configure_logging, get_logger

logger = get_logger("mathsteps.main")

_PIPELINE_ERRORS = (
    ImageUnavailableError,
    NotConfiguredError,
    RecognitionFailedError,
    ExplanationFailedError,
    NoResponseError,
    ResponseParseError,
    RequestAbortedError,
)


def build_parser() -> argparse.ArgumentParser:
    """Defines the command-line flags for both run modes.

    Returns:
        Parser for `main`.
    """
    parser = argparse.ArgumentParser(description="MathSteps")
    parser.add_argument("--mode", choices=["cli", "api"], default="cli")
    parser.add_argument("--problem", type=str, default="", help="Problem statement (cli mode)")
    parser.add_argument("--image-path", type=str, default=None, help="Local path of a problem photo (cli mode)")
    parser.add_argument(
        "--direct",
        action="store_true",
        help="Explain the image directly instead of recognizing its text first",
    )
    parser.add_argument("--config", type=str, default=None, help="Models YAML file")
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser


def run_cli(
    config: ModelsConfig,
    problem: str,
    image_path: Optional[str] = None,
    direct: bool = False,
) -> int:
    """Explains one problem and prints the problem text and steps as JSON.

    Args:
        config: Loaded configuration.
        problem: Typed problem; wins over recognition when both are given.
        image_path: Local photo of the problem.
        direct: Explain the image without a recognition pass.

    Returns:
        Process exit code.

    Raises:
        ValueError: If no valid input is provided.
    """
    if not problem and not image_path:
        raise ValueError("--problem or --image-path is required in cli mode")

    explainer = ExplanationGenerator(config.explanation)
    recognizer = ProblemRecognizer(config.ocr)
    problem_text = problem
    try:
        if image_path and direct:
            result = explainer.explain_from_image(image_path)
        else:
            if image_path and not problem:
                problem_text = recognizer.recognize(image_path)
            result = explainer.explain(problem_text)
    except _PIPELINE_ERRORS as exc:
        logger.error("cli_failed error=%s", exc)
        print(json.dumps({"error": str(exc)}, ensure_ascii=False, indent=2))
        return 2
    finally:
        recognizer.close()
        explainer.close()

    print(
        json.dumps(
            {"problem_text": problem_text or None, "steps": result_to_dict(result)["steps"]},
            ensure_ascii=False,
            indent=2,
        )
    )
    return 0


def run_api(config: ModelsConfig, host: Optional[str], port: Optional[int]) -> int:
    """Serves the HTTP API with uvicorn until interrupted.

    Args:
        config: Loaded configuration.
        host: Bind host; defaults to `server.host`.
        port: Bind port; defaults to `server.port`.

    Returns:
        Process exit code.
    """
    try:
        app = create_app(config)
    except HistoryLoadError as exc:
        logger.error("history_load_failed error=%s", exc)
        print("History error: {}".format(exc), file=sys.stderr)
        return 1
    uvicorn.run(app, host=host or config.server.host, port=port or config.server.port)
    return 0


def main(argv: Optional[list] = None) -> int:
    """Loads configuration and dispatches to the selected mode.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_models_config(args.config)
    except ConfigError as exc:
        logger.error("config_load_failed error=%s", exc)
        print("Configuration error: {}".format(exc), file=sys.stderr)
        return 1
    logger.info(config.describe_status())

    if args.mode == "api":
        return run_api(config, args.host, args.port)
    return run_cli(
        config=config,
        problem=args.problem,
        image_path=args.image_path,
        direct=args.direct,
    )


if __name__ == "__main__":
    raise SystemExit(main())

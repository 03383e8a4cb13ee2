"""
SiteVoice - Main Entry Point

Command-line front end for the command pipeline.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Optional

from sitevoice.adapters.collaborators import DryRunStorage
from sitevoice.app.monitor import load_reference_set
from sitevoice.app.pipeline import CommandPipeline, build_pipeline
from sitevoice.core.config import load_pipeline_config
from sitevoice.core.entities import CommandContext, CommandInput, CommandRun
from sitevoice.core.events import ClarificationRequested, StageChanged, TranscriptAvailable


def setup_logging(verbose: bool = False) -> None:
    """Sets up logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_run(run: CommandRun) -> None:
    icon = {
        "success": "✅",
        "queued_offline": "💾",
        "clarification_needed": "❓",
        "low_confidence": "🔇",
        "rate_limited": "⏳",
        "timed_out": "⌛",
        "cancelled": "🚫",
    }.get(run.outcome.value, "❌")

    print(f"{icon} {run.outcome.value}: {run.message}")
    if run.transcript:
        print(f"   Transcript: {run.transcript}")
    if run.intent is not None and not run.intent.is_unknown:
        print(f"   Intent:     {run.intent.action} {run.intent.to_payload()['entities']}")
    if run.confidences:
        scores = ", ".join(f"{step}={value:.2f}" for step, value in run.confidences.items())
        print(f"   Confidence: {scores}")
    if run.retry_after:
        print(f"   Retry in:   {run.retry_after:.0f}s")
    print(f"   Latency:    {run.stage_latency_ms.get('end_to_end', 0.0):.0f}ms")


async def run_command(
    pipeline: CommandPipeline,
    command_input: CommandInput,
    context: CommandContext,
    previous_run: Optional[CommandRun] = None,
    verbose: bool = False,
) -> CommandRun:
    """Runs one command, echoing its progress events."""
    stream = pipeline.run(command_input, context, previous_run=previous_run)
    async for event in stream:
        if isinstance(event, TranscriptAvailable):
            print(f"🗣️  Heard: {event.text} ({event.confidence:.0%})")
        elif isinstance(event, ClarificationRequested):
            print(f"🤔 {event.text}")
        elif isinstance(event, StageChanged) and verbose:
            print(f"   {event.from_stage.name} -> {event.to_stage.name}")
    run = await stream.result()
    print_run(run)
    return run


async def run_interactive(pipeline: CommandPipeline, context: CommandContext, verbose: bool = False) -> None:
    """Runs the interactive text mode."""
    print("=" * 60)
    print("SiteVoice - Interactive Mode")
    print("=" * 60)
    print()
    print("Type commands as you would say them.")
    print("Type 'help' for example commands, 'pending' for the offline queue,")
    print("'flush' to sync it, 'report' for quality metrics.")
    print("Type 'quit' or 'exit' to stop.")
    print()

    previous: Optional[CommandRun] = None
    while True:
        try:
            command = (await asyncio.to_thread(input, "You: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not command:
            continue

        lowered = command.lower()
        if lowered in ("quit", "exit", "q"):
            print("Goodbye!")
            break
        if lowered == "help":
            print_help(pipeline)
            continue
        if lowered == "pending":
            count = await pipeline.get_pending_offline_count(context.tenant_id)
            print(f"💾 {count} command(s) waiting to sync")
            continue
        if lowered == "flush":
            result = await pipeline.flush_offline(context.tenant_id)
            print(f"🔄 Synced {result.applied}, dead-lettered {result.dead_lettered}, remaining {result.remaining}")
            continue
        if lowered == "report":
            print_report(pipeline)
            continue

        print()
        # A command right after a clarification or low-confidence answer is a retry
        if previous is not None and previous.outcome.is_retryable_by_user:
            previous = await run_command(pipeline, CommandInput.from_text(command), context, previous, verbose)
        else:
            previous = await run_command(pipeline, CommandInput.from_text(command), context, verbose=verbose)
        print()


def print_help(pipeline: CommandPipeline) -> None:
    """Prints example commands."""
    print()
    print("Example commands:")
    print("-" * 40)
    local = pipeline.intent.local
    if hasattr(local, "get_supported_actions"):
        for action in local.get_supported_actions():
            for example in local.get_examples(action):
                print(f"  {example}")
    print("-" * 40)
    print()


def print_report(pipeline: CommandPipeline, window_hours: float = 24.0, as_json: bool = False) -> None:
    report = pipeline.get_quality_report(timedelta(hours=window_hours))
    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return

    print("=" * 60)
    print(f"📊 QUALITY REPORT (last {window_hours:g}h)")
    print("=" * 60)
    print(f"Samples:            {report.sample_count} ({report.ground_truth_count} with ground truth)")
    print(f"Median WER:         {_fmt(report.median_wer)}")
    print(f"Numeric accuracy:   {_fmt(report.numeric_accuracy)}")
    print(f"Intent F1:          {_fmt(report.intent_f1)}")
    print(f"p95 end-to-end:     {_fmt(report.p95_end_to_end_seconds)}s")
    print(f"Failure rate:       {_fmt(report.failure_rate)}")
    for target, met in report.targets_met.items():
        print(f"Target {target + ':':19s}{'met' if met else 'missed'}")
    for violation in report.violations:
        print(f"  ⚠️  {violation.message}")
    print()


def _fmt(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.3f}"


async def run_evaluation(pipeline: CommandPipeline, path: str) -> int:
    """Runs a reference set through the configured providers."""
    cases = load_reference_set(path)
    transcriber = None
    if pipeline.transcription is not None:
        transcriber = pipeline.transcription.remote or pipeline.transcription.local
    parser = pipeline.intent.remote or pipeline.intent.local
    report = await pipeline.monitor.evaluate_reference_set(cases, parser, transcriber=transcriber)
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if not report.violations else 1


async def amain(parsed: argparse.Namespace) -> int:
    config = load_pipeline_config()
    if parsed.whisper_model:
        config = replace(config, whisper_model_size=parsed.whisper_model)

    storage = DryRunStorage(offline=True) if parsed.offline else None
    pipeline = build_pipeline(
        config,
        storage=storage,
        load_local_models=not parsed.no_local_models,
    )
    if parsed.no_tts:
        pipeline.synthesis = None

    context = CommandContext(
        tenant_id=parsed.tenant,
        principal_id=parsed.principal or "",
        language=parsed.language,
    )

    try:
        if parsed.evaluate:
            return await run_evaluation(pipeline, parsed.evaluate)
        if parsed.pending:
            count = await pipeline.get_pending_offline_count(context.tenant_id)
            print(f"{count} command(s) pending for {context.tenant_id}")
            return 0
        if parsed.flush:
            result = await pipeline.flush_offline(context.tenant_id)
            print(f"Applied {result.applied}, dead-lettered {result.dead_lettered}, remaining {result.remaining}")
            return 0 if not result.stopped_offline else 1
        if parsed.audio:
            audio = Path(parsed.audio).read_bytes()
            run = await run_command(pipeline, CommandInput.from_audio(audio), context, verbose=parsed.verbose)
            return 0 if run.outcome.is_success else 1
        if parsed.command:
            run = await run_command(pipeline, CommandInput.from_text(parsed.command), context, verbose=parsed.verbose)
            if parsed.report:
                print_report(pipeline, as_json=True)
            return 0 if run.outcome.is_success else 1
        if parsed.report:
            print_report(pipeline, as_json=True)
            return 0

        await run_interactive(pipeline, context, verbose=parsed.verbose)
        return 0
    finally:
        await pipeline.close()


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="sitevoice",
        description="SiteVoice - voice commands for construction site records",
    )

    parser.add_argument(
        "-c", "--command",
        type=str,
        help="Process a single typed command and exit",
    )

    parser.add_argument(
        "-a", "--audio",
        type=str,
        metavar="WAV",
        help="Process a recorded command (WAV file) and exit",
    )

    parser.add_argument(
        "-t", "--tenant",
        type=str,
        default="default",
        help="Tenant (company) the commands belong to (default: default)",
    )

    parser.add_argument(
        "-p", "--principal",
        type=str,
        help="User issuing the commands",
    )

    parser.add_argument(
        "--language",
        type=str,
        default="en-US",
        help="BCP-47 language tag (default: en-US)",
    )

    parser.add_argument(
        "--offline",
        action="store_true",
        help="Treat storage as unreachable; commands are queued locally",
    )

    parser.add_argument(
        "--pending",
        action="store_true",
        help="Show the number of commands waiting in the offline queue",
    )

    parser.add_argument(
        "--flush",
        action="store_true",
        help="Replay the tenant's offline queue",
    )

    parser.add_argument(
        "--report",
        action="store_true",
        help="Print the quality report as JSON",
    )

    parser.add_argument(
        "--evaluate",
        type=str,
        metavar="JSON",
        help="Run a reference test set and print its quality report",
    )

    parser.add_argument(
        "--whisper-model",
        type=str,
        choices=["tiny", "base", "small", "medium", "large-v2", "large-v3"],
        help="Whisper model size for the local transcription fallback",
    )

    parser.add_argument(
        "--no-local-models",
        action="store_true",
        help="Do not load Whisper/Piper fallbacks",
    )

    parser.add_argument(
        "--no-tts",
        action="store_true",
        help="Disable spoken confirmations",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version="SiteVoice v0.1.0",
    )

    parsed = parser.parse_args(args)

    # Sets up logging
    setup_logging(parsed.verbose)

    try:
        return asyncio.run(amain(parsed))
    except KeyboardInterrupt:
        print("\nStopped")
        return 130


if __name__ == "__main__":
    sys.exit(main())

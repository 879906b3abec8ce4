#!/usr/bin/env python3
"""
Main entry point for the SpeakEval pipeline.
Allows running the package with: python -m speakeval <test-id> <segment-key>=<wav-path> ...
"""
import json
import logging
import os
import sys

from .config import get_config
from .errors import SpeakEvalError
from .utils.logging import setup_logging
from . import JobOrchestrator

USAGE = ("Usage: python -m speakeval <test-id> <segment-key>=<wav-path> [...] "
         "[--user=<id>] [--trim-trailing] [--json]")


def _parse_segments(args):
    segments = {}
    for arg in args:
        if "=" not in arg:
            print(f"❌ Invalid segment argument {arg!r}. Use part1-q1=/path/to/answer.wav")
            sys.exit(1)
        key, path = arg.split("=", 1)
        if not os.path.isfile(path):
            print(f"❌ Recording not found: {path}")
            sys.exit(1)
        segments[key.strip()] = path
    return segments


def main():
    """Command-line interface: evaluate one test from local recordings."""

    # Load configuration from environment
    try:
        config = get_config()
    except ValueError as e:
        print(f"❌ Configuration Error: {e}")
        sys.exit(1)

    positional = [a for a in sys.argv[1:] if not a.startswith("--")]
    if len(positional) < 2:
        print(USAGE)
        sys.exit(1)
    test_id, segment_args = positional[0], positional[1:]

    user_id = "cli"
    for arg in sys.argv[1:]:
        if arg.startswith("--user="):
            user_id = arg.split("=", 1)[1] or user_id
    trim_trailing = "--trim-trailing" in sys.argv
    as_json = "--json" in sys.argv

    log_path = setup_logging(config.log_file, getattr(logging, config.log_level.upper(), logging.INFO)
                             if "--verbose" in sys.argv else logging.CRITICAL)
    segments = _parse_segments(segment_args)

    orchestrator = JobOrchestrator.from_config(config, trim_trailing=trim_trailing)

    # Upload local recordings into the blob store the pipeline reads from
    refs = {}
    for key, path in segments.items():
        with open(path, "rb") as f:
            refs[key] = orchestrator.storage.put(f"uploads/{test_id}/{key}.wav", f.read())

    job_id = orchestrator.submit(test_id, user_id, refs)
    print(f"🎙️  Evaluating {len(refs)} recording(s) for test {test_id} (job {job_id[:8]})")
    if trim_trailing:
        print("✂️  Trailing silence trimming enabled")

    try:
        job = orchestrator.advance(job_id)
    except SpeakEvalError as e:
        print(f"❌ Evaluation error: {e}")
        sys.exit(1)
    finally:
        orchestrator.shutdown()

    status = orchestrator.get_status(job_id)
    if job.status.value != "completed":
        print(f"❌ {status['message']} ({status['status']}, retries {status['retry_count']}/{status['max_retries']})")
        if status["last_error"]:
            print(f"   Last error: {status['last_error']}")
        print(f"📄 Details in {log_path}")
        sys.exit(2)

    result = orchestrator.get_result(job_id)
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return

    print(f"\n✅ Overall band: {result.overall_band:.1f}")
    for name, criterion in result.criteria.items():
        print(f"   {name.replace('_', ' ').title():<22} {criterion.band:.1f}")
    if result.summary:
        print(f"\n📝 {result.summary}")
    if result.validation_issues:
        print(f"\n⚠️  {len(result.validation_issues)} validation issue(s), see {log_path}")
    print(f"📄 Result stored as {job.result_id}")


if __name__ == "__main__":
    main()

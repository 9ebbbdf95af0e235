# -*- coding: utf-8 -*-
import argparse
import json
import logging
import sys

from log_utils import setup_logging
from scheduling import ManualScheduler
from sign_buffer import SignTranslationSession
from sign_config import AppSettings, ConfigurationError
from translation_service import ChatCompletionsBackend, TranslationDispatcher

logger = logging.getLogger("manage")


def load_events(path):
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                item = json.loads(line)
                events.append((item.get("label"), float(item["confidence"]), float(item["timestamp_ms"])))
            except (ValueError, KeyError, TypeError) as e:
                raise ValueError(f"{path}:{lineno}: bad detection event ({e})") from e
    events.sort(key=lambda e: e[2])
    return events


def replay(events, settings, context_aware=False, dispatcher=None):
    """Feed recorded detections through a session on a virtual clock. Returns the results."""
    results = []
    scheduler = ManualScheduler(start_ms=events[0][2] if events else 0.0)
    config = settings.pipeline.with_overrides({"use_context_aware_translation": context_aware})
    session = SignTranslationSession(
        config=config,
        dispatcher=dispatcher or TranslationDispatcher(ChatCompletionsBackend(settings.llm)),
        on_result=results.append,
        scheduler=scheduler,
        session_id="replay",
    )
    try:
        for label, confidence, ts in events:
            scheduler.advance_to(max(ts, scheduler.now_ms()))
            session.on_detection(label, confidence, ts)
            # Context-aware flushes run on worker threads; keep delivery in step with the clock.
            session.drain()
        scheduler.advance(config.flush_delay_ms)
        session.drain()
    finally:
        session.close()
    return results


def cmd_replay(args):
    settings = AppSettings.from_env()
    results = replay(load_events(args.events), settings, context_aware=args.context_aware)
    for result in results:
        print(json.dumps(result.to_dict(), ensure_ascii=False))
    return 0


def cmd_serve(args):
    import main_server

    main_server.main()
    return 0


def cmd_demo(args):
    from history_store import TranslationHistoryStore
    from sign_language_translator import SignLanguageTranslatorController
    from speech_output import SpeechOutput

    settings = AppSettings.from_env()
    config = settings.pipeline
    if args.context_aware:
        config = config.with_overrides({"use_context_aware_translation": True})
    controller = SignLanguageTranslatorController(
        config=config,
        dispatcher=TranslationDispatcher(ChatCompletionsBackend(settings.llm)),
        speech=SpeechOutput(enabled=settings.tts_enabled),
        history=TranslationHistoryStore.from_settings(settings.firebase),
        user_id=args.user_id,
    )
    try:
        controller.run_camera()
    finally:
        controller.stop()
    return 0


def main(argv=None):
    ap = argparse.ArgumentParser(description="Sign Translator CLI")
    ap.add_argument("--log-level", default=None)
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="HTTP server").set_defaults(func=cmd_serve)

    s = sub.add_parser("demo", help="Live camera demo")
    s.add_argument("--context-aware", action="store_true")
    s.add_argument("--user-id", default=None)
    s.set_defaults(func=cmd_demo)

    s = sub.add_parser("replay", help="Replay recorded detections (JSONL) through the buffer")
    s.add_argument("--events", required=True)
    s.add_argument("--context-aware", action="store_true")
    s.set_defaults(func=cmd_replay)

    args = ap.parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.func(args)
    except (ConfigurationError, ValueError, OSError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())

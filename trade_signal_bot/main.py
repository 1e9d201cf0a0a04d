from __future__ import annotations

import argparse
import asyncio
import json
import logging

from .config import Config, load_config
from .runner import CLOSE, INTRABAR, SignalRunner

# One-shot modes exit after a single call, so state must outlive the process.
ONE_SHOT_MODES = (INTRABAR, CLOSE, "confirm", "state")


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def check_mode_backend(cfg: Config, mode: str) -> None:
    if mode in ONE_SHOT_MODES and cfg.state.backend == "memory":
        raise ValueError(
            f"--mode {mode} needs a shared state backend; set state.backend: redis (memory only works with --mode run)"
        )


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Trade Signal Bot - preview/confirm signal engine")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument(
        "--mode",
        choices=["run", INTRABAR, CLOSE, "confirm", "state"],
        default="run",
        help="run forever, one cycle, request confirmation or dump symbol state",
    )
    p.add_argument("--symbol", default="", help="Symbol for confirm/state modes")
    p.add_argument("--min-confidence", type=int, default=None, help="Override the confidence gate for one cycle")
    args = p.parse_args(argv)

    try:
        cfg = load_config(args.config)
        check_mode_backend(cfg, args.mode)
    except (OSError, TypeError, ValueError) as e:
        _setup_logging("INFO")
        logging.getLogger("main").exception("config_error path=%s err=%s", args.config, e)
        return 1
    _setup_logging(cfg.app.log_level)

    runner = SignalRunner(cfg)

    async def _run() -> None:
        try:
            if args.mode == "run":
                await runner.run_forever()
            elif args.mode in (INTRABAR, CLOSE):
                report = await runner.run_cycle(args.mode, min_confidence=args.min_confidence)
                print(json.dumps(report.to_dict(), indent=2))
            elif args.mode == "confirm":
                res = await runner.request_confirmation(args.symbol)
                print(json.dumps({"ok": True, "mode": "wait_close", "result": res}, indent=2))
            else:
                state = await runner.lifecycle.state(args.symbol.strip().upper())
                print(json.dumps(state, indent=2))
        finally:
            await runner.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

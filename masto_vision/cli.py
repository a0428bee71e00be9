from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Sequence

from .captioner import OpenAICaptioner
from .config import RuntimeSecrets, config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .dedupe import DEFAULT_FILENAME, ProcessedPostStore
from .errors import ConfigError, IngestionError, MastodonError, StateError
from .ingest import NotificationDispatcher, run_ingestion
from .mastodon_client import MastodonClient
from .orchestrator import UpdateOrchestrator
from .retry import logging_on_retry
from .run_log import RunLogger

_LOG_LEVELS = ("debug", "info", "warning", "error")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="masto-vision")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run",
        help="Watch the account and add image descriptions until interrupted.",
    )
    run.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    run.add_argument(
        "--out",
        required=True,
        help="Directory for the processed-posts file and the run log.",
    )
    run.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default="info",
        help="Minimum level written to the log (default: info).",
    )
    run.set_defaults(_handler=_cmd_run)

    verify = subparsers.add_parser(
        "verify",
        help="Check the Mastodon credentials and print the account id.",
    )
    verify.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    verify.set_defaults(_handler=_cmd_verify)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


async def _verify(cfg: AppConfig, secrets: RuntimeSecrets) -> str:
    async with MastodonClient(secrets.mastodon_access_token, mastodon_cfg=cfg.mastodon) as client:
        return await client.verify_identity()


async def _serve(
    cfg: AppConfig,
    secrets: RuntimeSecrets,
    *,
    store: ProcessedPostStore,
    log: RunLogger,
) -> None:
    async with MastodonClient(
        secrets.mastodon_access_token,
        mastodon_cfg=cfg.mastodon,
        on_retry=logging_on_retry(log),
    ) as client:
        log.info("mastodon_login_started", base_url=cfg.mastodon.base_url)
        owner_id = await client.verify_identity()
        log.info("mastodon_login_completed", owner_id=owner_id)

        captioner = OpenAICaptioner(secrets.openai_api_key, openai_cfg=cfg.openai)
        orchestrator = UpdateOrchestrator.from_config(
            cfg,
            store=store,
            captioner=captioner,
            account=client,
            owner_id=owner_id,
            logger=log,
        )
        dispatcher = NotificationDispatcher(orchestrator.handle, logger=log)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        handles_sigterm = True
        try:
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers.
            handles_sigterm = False
            log.debug("sigterm_handler_unavailable")

        try:
            await run_ingestion(
                cfg,
                stream_source=client,
                poll_source=client,
                dispatcher=dispatcher,
                owner_id=owner_id,
                logger=log,
                stop=stop,
            )
        finally:
            if handles_sigterm:
                loop.remove_signal_handler(signal.SIGTERM)


def _cmd_verify(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    secrets = resolve_runtime_secrets(cfg)
    owner_id = asyncio.run(_verify(cfg, secrets))
    print(f"owner_id={owner_id}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / "run.log"
    with RunLogger.open(log_path, min_level=args.log_level, echo=sys.stderr) as log:
        log.info(
            "run_command_started",
            config_path=str(args.config),
            out_dir=str(out_dir),
        )

        try:
            cfg = load_config(args.config)
            secrets = resolve_runtime_secrets(cfg)

            log.info(
                "config_loaded",
                config_path=str(args.config),
                config_hash=config_sha256(cfg),
                polling_enabled=cfg.polling.enabled,
                done_policy=cfg.captioning.done_policy,
            )

            store = ProcessedPostStore.load(out_dir / DEFAULT_FILENAME)
            log.info("processed_posts_loaded", path=str(store.path), count=len(store))

            asyncio.run(_serve(cfg, secrets, store=store, log=log))
            return 0
        except KeyboardInterrupt:
            log.info("run_command_interrupted")
            raise
        except Exception as e:
            log.exception("run_command_failed", exc=e)
            raise


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (MastodonError, StateError, IngestionError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1

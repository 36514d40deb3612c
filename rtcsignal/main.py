"""
Command line entrypoint.

Resolves configuration from a YAML profile, the environment and flags, then
either prints a signed connection URL (``--sign-only``) or opens a signaling
client and logs every event until interrupted.  Useful for checking
credentials and watching the traffic on a channel without a peer connection.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, Optional

from .client import ReadyState, SignalingClient
from .config import DEFAULT_PROFILE, SignalingClientConfig, load_config
from .errors import SignalingError
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def _summarise(payload: Any) -> str:
    if isinstance(payload, dict):
        kind = payload.get("type") or ("candidate" if "candidate" in payload else None)
        return f"{kind or 'payload'} ({len(str(payload))} chars)"
    return type(payload).__name__


async def watch(config: SignalingClientConfig) -> None:
    """
    Open a client on ``config`` and log its events until a signal or a close.
    """

    client = SignalingClient(config)
    role = client.role.value
    done = asyncio.Event()

    def _logger_for(label: str):
        def _log(payload: Any, sender: Optional[str]) -> None:
            LOG.info("[%s] Received %s from %s: %s", role, label, sender or "MASTER", _summarise(payload))

        return _log

    client.on("open", lambda: LOG.info("[%s] Connected to signaling service", role))
    client.on("sdp_offer", _logger_for("SDP offer"))
    client.on("sdp_answer", _logger_for("SDP answer"))
    client.on("ice_candidate", _logger_for("ICE candidate"))

    def _on_error(error: BaseException) -> None:
        LOG.error("[%s] Signaling client error: %s", role, error)
        if client.ready_state is ReadyState.CONNECTING:
            client.close()

    client.on("error", _on_error)

    def _on_close() -> None:
        LOG.info("[%s] Disconnected from signaling channel", role)
        done.set()

    client.on("close", _on_close)

    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        if client.ready_state is ReadyState.CLOSING:
            done.set()
            return
        LOG.info("Received signal %s, closing signaling client...", signum)
        client.close()

    installed = []
    for signame in ("SIGINT", "SIGTERM"):
        signum = getattr(signal, signame)
        try:
            loop.add_signal_handler(signum, _handle_signal, signum)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            continue
        installed.append(signum)

    client.open()
    try:
        await done.wait()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        client.close()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Signaling channel client")
    parser.add_argument("--config", help="YAML profiles file (defaults to $RTCSIGNAL_PROFILES)")
    parser.add_argument("--profile", default=DEFAULT_PROFILE, help="profile to load from the config file")
    parser.add_argument("--role", choices=["MASTER", "VIEWER"], type=str.upper, help="client role")
    parser.add_argument("--channel-arn", help="signaling channel ARN")
    parser.add_argument("--endpoint", help="WSS endpoint of the signaling channel")
    parser.add_argument("--region", help="service region")
    parser.add_argument("--client-id", help="client id (VIEWER only)")
    parser.add_argument("--log-level", default="INFO", help="logging level")
    parser.add_argument("--sign-only", action="store_true", help="print the signed URL and exit")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SignalingClientConfig:
    overrides: Dict[str, Any] = {
        "role": args.role,
        "channel_arn": args.channel_arn,
        "channel_endpoint": args.endpoint,
        "region": args.region,
        "client_id": args.client_id,
    }
    return load_config(args.config, profile=args.profile, overrides=overrides)


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = build_config(args)
    except (SignalingError, ValueError, OSError) as exc:
        LOG.error("Invalid configuration: %s", exc)
        return 2

    try:
        if args.sign_only:
            print(asyncio.run(SignalingClient(config).create_signed_url()))
        else:
            asyncio.run(watch(config))
    except SignalingError as exc:
        LOG.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from xcloudpcap.config_loader import load_config
from xcloudpcap.decode import decode_capture
from xcloudpcap.errors import FatalError
from xcloudpcap.logging_setup import setup_logging
from xcloudpcap.services.srtp import PROFILES

LOGGER = logging.getLogger(__name__)


@click.group()
def main() -> None:
    """xcloudpcap commands."""
    setup_logging()
    LOGGER.debug("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@click.argument("input_pcap", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--srtp-key", envvar="XCLOUDPCAP_SRTP_KEY", default=None, help="Base64 SRTP master key || salt.")
@click.option(
    "--profile",
    type=click.Choice(sorted(PROFILES), case_sensitive=False),
    default=None,
    help="SRTP protection profile (default from config).",
)
@click.option("--rewrite", "rewrite_to", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write a decrypted copy of the capture.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None, help="YAML decoder config.")
@click.option("--no-hexdump", is_flag=True, default=False, help="Do not hex-dump unknown or failed payloads.")
@click.option("--quiet", is_flag=True, default=False, help="Only print the summary.")
def decode(
    input_pcap: Path,
    srtp_key: Optional[str],
    profile: Optional[str],
    rewrite_to: Optional[Path],
    config_path: Optional[Path],
    no_hexdump: bool,
    quiet: bool,
) -> None:
    """Decode STUN, probing, SRTP/RTP and mux traffic of a capture."""
    LOGGER.info(
        "CLI decode command input=%s decrypt=%s profile=%s rewrite=%s config=%s",
        input_pcap,
        bool(srtp_key),
        profile or "-",
        rewrite_to or "-",
        config_path or "-",
        extra={"category": "CONFIG"},
    )
    try:
        config = load_config(config_path)
        if srtp_key:
            config.srtp.key = srtp_key.strip()
        if profile:
            config.srtp.profile = profile.upper()
        if no_hexdump:
            config.output.hexdump = False
        stats = decode_capture(
            input_pcap,
            config,
            emit=None if quiet else click.echo,
            rewrite_to=rewrite_to,
        )
    except FatalError as exc:
        LOGGER.error("Decode aborted reason=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    if config.output.stats:
        kinds = " ".join(f"{kind}={count}" for kind, count in sorted(stats.by_kind.items()))
        click.echo(
            f"records={stats.records} {kinds} failures={stats.failures} decrypted={stats.decrypted} "
            f"auth_failures={stats.auth_failures} replays={stats.replays} probe_rounds={stats.probe_rounds}",
            err=True,
        )


if __name__ == "__main__":
    main()

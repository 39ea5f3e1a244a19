from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

RESYNC_INTERVAL_ENV = "RESYNC_INTERVAL"
DEFAULT_RESYNC_INTERVAL_SECONDS = 30


class OperatorError(RuntimeError):
    """Base class for errors that abort operator startup or shutdown."""


class ConfigError(OperatorError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable startup configuration, passed explicitly into ``start``.

    Attributes:
        kubeconfig: Path to an explicit kubeconfig; empty means in-cluster.
        resync_interval_seconds: Informer resync period.
        threadiness: Number of reconcile workers launched by ``run``.
        cache_sync_timeout_seconds: Upper bound on the initial cache sync wait.
        shutdown_grace_seconds: Time budget for draining workers on stop.
        health_port: Port of the health/metrics HTTP server.
    """

    kubeconfig: str = ""
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    threadiness: int = 2
    cache_sync_timeout_seconds: int = 300
    shutdown_grace_seconds: int = 30
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def resolve_sync_interval(env: Mapping[str, str] | None = None) -> int:
    """Return the informer resync interval in seconds.

    Reads ``RESYNC_INTERVAL`` as whole seconds.  Missing, non-numeric, zero
    and negative values are logged as a warning and replaced by the 30 second
    default, so this never fails.
    """
    values = env if env is not None else os.environ
    raw = values.get(RESYNC_INTERVAL_ENV)
    try:
        interval = int(raw) if raw is not None else 0
    except ValueError:
        interval = 0

    if interval <= 0:
        LOGGER.warning(
            "Incorrect resync interval %r obtained from env, defaulting to %d seconds",
            raw,
            DEFAULT_RESYNC_INTERVAL_SECONDS,
        )
        return DEFAULT_RESYNC_INTERVAL_SECONDS
    return interval


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cspc-operator",
        description="Watch CStorPoolCluster resources and reconcile cluster state.",
    )
    parser.add_argument(
        "-kubeconfig",
        "--kubeconfig",
        dest="kubeconfig",
        default="",
        help="Path for kube config; empty uses in-cluster credentials",
    )
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> OperatorConfig:
    """Load operator config from command-line flags and the environment.

    Environment variables (with defaults):
        ``RESYNC_INTERVAL``           : informer resync seconds (``30``).
        ``WORKER_COUNT``              : reconcile workers (``2``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: initial cache sync bound (``300``).
        ``SHUTDOWN_GRACE_SECONDS``    : worker drain budget (``30``).
        ``HEALTH_PORT``               : health server port (``8080``).
    """
    args = build_arg_parser().parse_args(argv)
    return OperatorConfig(
        kubeconfig=(args.kubeconfig or "").strip(),
        resync_interval_seconds=resolve_sync_interval(env),
        threadiness=env_int("WORKER_COUNT", 2, minimum=1, env=env),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 300, minimum=1, env=env
        ),
        shutdown_grace_seconds=env_int("SHUTDOWN_GRACE_SECONDS", 30, minimum=0, env=env),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=env),
    )

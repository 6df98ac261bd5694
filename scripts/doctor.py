"""Environment and configuration preflight checks for running the relay."""

from __future__ import annotations

import os
import socket
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from llmrelay.core.config import TRUTHY, ConfigError, RelayConfig, load_config_from_env

MIN_PYTHON = (3, 10)


@dataclass
class DoctorResult:
    ok: bool
    messages: List[str]


def _python_version_tuple() -> Tuple[int, int, int]:
    v = sys.version_info
    return (v.major, v.minor, v.micro)


def _check_python_version(errors: List[str]) -> None:
    current = _python_version_tuple()
    if current[:2] < MIN_PYTHON:
        errors.append(
            f"Python {current[0]}.{current[1]} is unsupported. "
            f"Use Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]} or newer."
        )


def _load_config(env: Mapping[str, str], errors: List[str]) -> Optional[RelayConfig]:
    try:
        return load_config_from_env(env)
    except ConfigError as exc:
        errors.append(f"Invalid relay configuration: {exc}")
        return None


def _check_backends(config: RelayConfig, errors: List[str], warnings: List[str]) -> None:
    enabled = config.enabled_backends()
    if not enabled:
        errors.append("No backend is enabled. Check RELAY_BACKENDS and <NAME>_ENABLED.")
        return

    if config.use_stub_adapters:
        warnings.append("RELAY_USE_STUB_ADAPTERS=true: every backend answers with the local stub.")
        return

    missing = [b.name for b in enabled if not b.api_key]
    if len(missing) == len(enabled):
        errors.append(
            "No backend has an API key. Set e.g. `GROQ_API_KEY` or run with "
            "`RELAY_USE_STUB_ADAPTERS=true`."
        )
    else:
        for name in missing:
            warnings.append(f"Backend `{name}` has no API key and will never be routed to.")

    for tier in ("low", "medium", "high"):
        if not any(tier in {t.value for t in b.tiers} for b in enabled if b.api_key):
            warnings.append(f"No keyed backend serves the `{tier}` tier; requests will degrade.")


def _check_port_binding(env: Mapping[str, str], errors: List[str]) -> None:
    host = env.get("HOST", "0.0.0.0").strip() or "0.0.0.0"
    raw_port = env.get("PORT", "8000").strip() or "8000"

    try:
        port = int(raw_port)
    except ValueError:
        errors.append(f"PORT must be an integer, got `{raw_port}`.")
        return

    if not (0 < port < 65536):
        errors.append(f"PORT must be between 1 and 65535, got `{port}`.")
        return

    bind_host = "127.0.0.1" if host in {"0.0.0.0", "localhost", ""} else host
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((bind_host, port))
    except OSError as exc:
        errors.append(
            f"PORT/HOST conflict: cannot bind {bind_host}:{port} ({exc}). "
            "Pick a free port, e.g. `PORT=8010`."
        )
    finally:
        sock.close()


def _check_probing(env: Mapping[str, str], warnings: List[str]) -> None:
    if env.get("RELAY_HEALTH_PROBING", "true").strip().lower() not in TRUTHY:
        warnings.append("RELAY_HEALTH_PROBING is off: availability only changes on live traffic.")


def run_doctor(env: Optional[Mapping[str, str]] = None) -> DoctorResult:
    env_map: Mapping[str, str] = os.environ if env is None else env
    errors: List[str] = []
    warnings: List[str] = []

    _check_python_version(errors)
    config = _load_config(env_map, errors)
    if config is not None:
        _check_backends(config, errors, warnings)
    _check_port_binding(env_map, errors)
    _check_probing(env_map, warnings)

    messages: List[str] = []
    if errors:
        messages.append("Doctor found configuration issues:")
        for i, msg in enumerate(errors, 1):
            messages.append(f"{i}. {msg}")
        messages.append("Fix the items above and rerun `python -m scripts.doctor`.")
    else:
        messages.append("Doctor checks passed.")

    if warnings:
        messages.append("Warnings:")
        for i, msg in enumerate(warnings, 1):
            messages.append(f"- {msg}")

    return DoctorResult(ok=not errors, messages=messages)


def main() -> int:
    result = run_doctor()
    print("\n".join(result.messages))
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())

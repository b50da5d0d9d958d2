"""Bootstrap a local .env file with secure defaults."""

from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path


def _generate_secret(bytes_len: int = 32) -> str:
    return secrets.token_urlsafe(bytes_len)


def _is_placeholder(value: str) -> bool:
    return "CHANGE_ME" in value or value.strip() == ""


def _parse_kv_line(line: str) -> tuple[str, str] | None:
    if "=" not in line or line.lstrip().startswith("#"):
        return None
    key, _, value = line.partition("=")
    return key.strip(), value.strip()


def build_values(
    template_lines: list[str],
    *,
    redis_host: str | None,
    redis_port: str,
    environment: str | None,
    force_rotate: bool,
    dev_cors: bool,
) -> dict[str, str]:
    existing: dict[str, str] = {}
    for line in template_lines:
        parsed = _parse_kv_line(line)
        if parsed:
            key, value = parsed
            existing[key] = value

    values: dict[str, str] = {}

    current_secret = existing.get("JWT_SECRET", "")
    if force_rotate or _is_placeholder(current_secret):
        values["JWT_SECRET"] = _generate_secret()
    else:
        values["JWT_SECRET"] = current_secret

    if redis_host and "REDIS_URL" in existing:
        values["REDIS_URL"] = f"redis://{redis_host}:{redis_port}/0"

    if environment and "ENVIRONMENT" in existing:
        values["ENVIRONMENT"] = environment

    if dev_cors and "CORS_ORIGINS" in existing:
        values["CORS_ORIGINS"] = "http://localhost:3000,http://localhost:5173"

    return values


def write_env(template_lines: list[str], values: dict[str, str]) -> str:
    rendered: list[str] = []
    for line in template_lines:
        parsed = _parse_kv_line(line)
        if not parsed:
            rendered.append(line)
            continue
        key, _value = parsed
        if key in values:
            rendered.append(f"{key}={values[key]}\n")
        else:
            rendered.append(line)
    return "".join(rendered)


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate a .env file from .env.example")
    parser.add_argument(
        "--path",
        default=None,
        help="Output path for .env (default: repo root/.env)",
    )
    parser.add_argument(
        "--redis-host",
        default=None,
        help="Redis host for REDIS_URL (default: keep the in-process store)",
    )
    parser.add_argument(
        "--redis-port",
        default="6379",
        help="Redis port for REDIS_URL (default: 6379)",
    )
    parser.add_argument(
        "--environment",
        default=None,
        help="Value for ENVIRONMENT (development, production, test)",
    )
    parser.add_argument(
        "--rotate",
        action="store_true",
        help="Regenerate secrets even if placeholders are already replaced",
    )
    parser.add_argument(
        "--dev-cors",
        action="store_true",
        help="Set CORS_ORIGINS to local dev defaults",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing .env if present",
    )

    args = parser.parse_args()

    repo_root = Path(__file__).resolve().parents[2]
    template_path = repo_root / ".env.example"
    if not template_path.exists():
        print(f"Template not found: {template_path}", file=sys.stderr)
        return 1

    env_path = Path(args.path) if args.path else repo_root / ".env"
    if env_path.exists() and not args.force:
        print(
            f"{env_path} already exists. Use --force to overwrite.",
            file=sys.stderr,
        )
        return 1

    template_lines = template_path.read_text(encoding="utf-8").splitlines(keepends=True)
    values = build_values(
        template_lines,
        redis_host=args.redis_host,
        redis_port=args.redis_port,
        environment=args.environment,
        force_rotate=args.rotate,
        dev_cors=args.dev_cors,
    )
    env_path.write_text(write_env(template_lines, values), encoding="utf-8")

    if os.name != "nt":
        try:
            env_path.chmod(0o600)
        except OSError:
            pass

    print(f"Wrote {env_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

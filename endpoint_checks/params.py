from __future__ import annotations

import os
import random
import re
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from endpoint_checks.errors import UnresolvedPlaceholder


_PLACEHOLDER_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_CALL_RE = re.compile(r"^([a-z_]+)\s*\((.*)\)$", re.S)
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_RAND_STR_ALPHABET = string.ascii_letters + string.digits


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResolveContext:
    """
    State for one check invocation.

    `env` values are looked up once and cached so every template resolved with
    the same context sees the same value; random placeholders are drawn fresh
    at every occurrence.
    """

    env_lookup: Callable[[str], str | None] = os.getenv
    clock: Callable[[], datetime] = _utcnow
    rng: random.Random = field(default_factory=random.Random)
    warnings: list[str] = field(default_factory=list)
    _env_cache: dict[str, str | None] = field(default_factory=dict)
    _now: datetime | None = None

    def env(self, name: str) -> str | None:
        if name not in self._env_cache:
            self._env_cache[name] = self.env_lookup(name)
        return self._env_cache[name]

    def now(self) -> datetime:
        # One timestamp per check keeps `timestamp` placeholders consistent.
        if self._now is None:
            now = self.clock()
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            self._now = now.astimezone(timezone.utc)
        return self._now


def _split_args(raw: str) -> list[str]:
    s = raw.strip()
    if not s:
        return []
    # A default may itself contain commas: split on the first one only.
    return [part.strip().strip("'\"") for part in s.split(",", 1)]


def _resolve_env(args: list[str], ctx: ResolveContext, template: str) -> str | None:
    if not args or not _ENV_NAME_RE.match(args[0]):
        return None
    name = args[0]
    value = ctx.env(name)
    if value is not None:
        return value
    if len(args) > 1:
        return args[1]
    raise UnresolvedPlaceholder(name, template)


def _resolve_expression(expr: str, ctx: ResolveContext, template: str) -> str | None:
    if expr == "uuid":
        return str(uuid.UUID(int=ctx.rng.getrandbits(128), version=4))
    if expr == "rand_int":
        return str(ctx.rng.randint(0, 1_000_000))
    if expr == "rand_str":
        return "".join(ctx.rng.choice(_RAND_STR_ALPHABET) for _ in range(16))
    if expr == "timestamp":
        return ctx.now().strftime(RFC3339_FORMAT)
    if expr == "unix":
        return str(int(ctx.now().timestamp()))
    if expr.startswith("%"):
        return ctx.now().strftime(expr)

    m = _CALL_RE.match(expr)
    if not m:
        return None
    func, raw_args = m.group(1), m.group(2)
    args = _split_args(raw_args)

    if func == "env":
        return _resolve_env(args, ctx, template)
    if func == "rand_int":
        try:
            lo, hi = (int(a) for a in args)
        except ValueError:
            return None
        if lo > hi:
            return None
        return str(ctx.rng.randint(lo, hi))
    if func == "rand_str":
        try:
            (n,) = (int(a) for a in args)
        except ValueError:
            return None
        if n < 0:
            return None
        return "".join(ctx.rng.choice(_RAND_STR_ALPHABET) for _ in range(n))
    return None


def resolve(template: str, ctx: ResolveContext) -> str:
    """
    Expand `{{...}}` placeholders in `template`.

    Unknown placeholders stay verbatim in the output and are recorded in
    `ctx.warnings`. Raises UnresolvedPlaceholder for a missing env value
    without a default.
    """
    if not template or "{{" not in template:
        return template

    def _sub(m: re.Match[str]) -> str:
        expr = m.group(1)
        value = _resolve_expression(expr, ctx, template)
        if value is None:
            ctx.warnings.append(f"unknown placeholder {m.group(0)!r}")
            return m.group(0)
        return value

    return _PLACEHOLDER_RE.sub(_sub, template)


def find_unresolvable(template: str, env_lookup: Callable[[str], str | None] = os.getenv) -> list[str]:
    """Names of `env(...)` placeholders that would fail to resolve."""
    missing: list[str] = []
    for m in _PLACEHOLDER_RE.finditer(template or ""):
        call = _CALL_RE.match(m.group(1))
        if not call or call.group(1) != "env":
            continue
        args = _split_args(call.group(2))
        if not args or len(args) > 1:
            continue
        if env_lookup(args[0]) is None and args[0] not in missing:
            missing.append(args[0])
    return missing

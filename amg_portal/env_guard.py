"""
Environment guard.

Keeps products from outside the configured insurance programme from ever
showing as covered. A product passes when its name, code or plan name
contains one of the match tokens (case-insensitive). ``*`` or ``ANY`` in
the token list turns the guard off.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BYPASS_TOKENS = frozenset({"*", "ANY"})


@dataclass(frozen=True)
class GuardConfig:
    match_tokens: tuple[str, ...] = ("TEST",)

    @classmethod
    def from_csv(cls, value: str | None) -> "GuardConfig":
        tokens = tuple(
            token.strip().upper()
            for token in (value if value is not None else "TEST").split(",")
            if token.strip()
        )
        return cls(match_tokens=tokens)

    @property
    def bypass(self) -> bool:
        return any(token in BYPASS_TOKENS for token in self.match_tokens)


def is_env_allowed(
    config: GuardConfig,
    product_name: str | None = "",
    product_code: str | None = "",
    plan_name: str | None = "",
) -> bool:
    name = (product_name or "").upper()
    code = (product_code or "").upper()
    plan = (plan_name or "").upper()
    allowed = config.bypass or any(
        token in name or token in code or token in plan
        for token in config.match_tokens
    )
    logger.info(
        "Env guard: tokens=%s bypass=%s productName=%r productCode=%r planName=%r => allowed=%s",
        list(config.match_tokens), config.bypass, name, code, plan, allowed,
    )
    return allowed

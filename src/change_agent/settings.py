from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LearningMode = Literal["off", "apply", "auto"]

DEFAULT_SEVERITY_POLICY: dict[str, str] = {
    "blocking": "actionable",
    "question": "actionable",
    "suggestion": "actionable",
    "nitpick": "ignore",
}
_SEVERITIES = frozenset(DEFAULT_SEVERITY_POLICY)
_SEVERITY_ACTIONS = frozenset({"actionable", "ignore", "auto_resolve"})
_LEARNING_MODES = frozenset({"off", "apply", "auto"})


@dataclass(frozen=True)
class VerifyCommand:
    name: str
    cmd: str


@dataclass(frozen=True)
class AutoFixConfig:
    enabled: bool = True
    max_attempts: int = 2


@dataclass(frozen=True)
class VerifyConfig:
    commands: tuple[VerifyCommand, ...] = ()
    fail_fast: bool = False
    auto_fix: AutoFixConfig = field(default_factory=AutoFixConfig)

    def command_lookup(self) -> dict[str, str]:
        return {command.name: command.cmd for command in self.commands}


@dataclass(frozen=True)
class ReviewIntelligenceConfig:
    enabled: bool = True
    severity_policy: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SEVERITY_POLICY))
    nitpick_acknowledgement: str = "Thanks for the note. Leaving this as-is for now; resolving as a nitpick."


@dataclass(frozen=True)
class ReviewConfig:
    max_iterations: int = 3
    ci_poll_interval_s: float = 15.0
    ci_timeout_s: float = 900.0
    intelligence: ReviewIntelligenceConfig = field(default_factory=ReviewIntelligenceConfig)


@dataclass(frozen=True)
class GithubConfig:
    reviewers: tuple[str, ...] = ()
    request_copilot: bool = False
    base_branch: str = "main"


@dataclass(frozen=True)
class LearningTargets:
    rules: str | None = None
    skills: str | None = None
    docs: str | None = None

    def as_dict(self) -> dict[str, str]:
        return {
            key: value
            for key, value in (("rules", self.rules), ("skills", self.skills), ("docs", self.docs))
            if value
        }


@dataclass(frozen=True)
class AutoApplyConfig:
    enabled: bool = False
    threshold: float = 0.7
    min_samples: int = 3
    lookback_days: int = 30
    max_history: int = 50


@dataclass(frozen=True)
class LearningConfig:
    enabled: bool = False
    mode: LearningMode = "off"
    ai_enabled: bool = False
    targets: LearningTargets = field(default_factory=LearningTargets)
    auto_apply: AutoApplyConfig = field(default_factory=AutoApplyConfig)


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation mutation flags."""

    apply: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class ControllerConfig:
    """Explicit configuration tree threaded through every controller entry point."""

    verify: VerifyConfig = field(default_factory=VerifyConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    github: GithubConfig = field(default_factory=GithubConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    model: str = "gpt-4o"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation.

    This is the only place the process environment is read; everything below
    the CLI receives a ``ControllerConfig`` built from these values.
    """

    state_root: str = ".agent-state"
    model: str = "gpt-4o"
    verify_commands_json: str = "[]"
    verify_fail_fast: bool = False
    auto_fix_enabled: bool = True
    auto_fix_max_attempts: int = 2
    review_max_iterations: int = 3
    ci_poll_interval_s: int = 15
    ci_timeout_s: int = 900
    review_intelligence_enabled: bool = True
    severity_policy_json: str = ""
    reviewers: str = ""
    request_copilot: bool = False
    base_branch: str = "main"
    learning_enabled: bool = False
    learning_mode: str = "off"
    learning_ai_enabled: bool = False
    learning_rules_target: str = ""
    learning_skills_target: str = ""
    learning_docs_target: str = ""
    learning_auto_apply: bool = False
    learning_threshold: float = 0.7
    learning_min_samples: int = 3
    learning_lookback_days: int = 30
    learning_max_history: int = 50

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_root=os.getenv("AGENT_STATE_ROOT", ".agent-state"),
            model=os.getenv("AGENT_MODEL", "gpt-4o"),
            verify_commands_json=os.getenv("AGENT_VERIFY_COMMANDS_JSON", "[]"),
            verify_fail_fast=_get_env_bool("AGENT_VERIFY_FAIL_FAST", default=False),
            auto_fix_enabled=_get_env_bool("AGENT_AUTOFIX_ENABLED", default=True),
            auto_fix_max_attempts=_get_env_int("AGENT_AUTOFIX_MAX_ATTEMPTS", default=2, minimum=0, maximum=20),
            review_max_iterations=_get_env_int("AGENT_REVIEW_MAX_ITERATIONS", default=3, minimum=1, maximum=50),
            ci_poll_interval_s=_get_env_int("AGENT_CI_POLL_INTERVAL_S", default=15, minimum=1),
            ci_timeout_s=_get_env_int("AGENT_CI_TIMEOUT_S", default=900, minimum=1),
            review_intelligence_enabled=_get_env_bool("AGENT_REVIEW_INTELLIGENCE", default=True),
            severity_policy_json=os.getenv("AGENT_SEVERITY_POLICY_JSON", ""),
            reviewers=os.getenv("AGENT_REVIEWERS", ""),
            request_copilot=_get_env_bool("AGENT_REQUEST_COPILOT", default=False),
            base_branch=os.getenv("AGENT_BASE_BRANCH", "main"),
            learning_enabled=_get_env_bool("AGENT_LEARNING_ENABLED", default=False),
            learning_mode=os.getenv("AGENT_LEARNING_MODE", "off"),
            learning_ai_enabled=_get_env_bool("AGENT_LEARNING_AI", default=False),
            learning_rules_target=os.getenv("AGENT_LEARNING_RULES_TARGET", ""),
            learning_skills_target=os.getenv("AGENT_LEARNING_SKILLS_TARGET", ""),
            learning_docs_target=os.getenv("AGENT_LEARNING_DOCS_TARGET", ""),
            learning_auto_apply=_get_env_bool("AGENT_LEARNING_AUTO_APPLY", default=False),
            learning_threshold=_get_env_float("AGENT_LEARNING_THRESHOLD", default=0.7, minimum=0.0, maximum=1.0),
            learning_min_samples=_get_env_int("AGENT_LEARNING_MIN_SAMPLES", default=3, minimum=0),
            learning_lookback_days=_get_env_int("AGENT_LEARNING_LOOKBACK_DAYS", default=30, minimum=1),
            learning_max_history=_get_env_int("AGENT_LEARNING_MAX_HISTORY", default=50, minimum=1),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_root.strip():
            raise ValueError("AGENT_STATE_ROOT must be non-empty")
        model = self.model.strip()
        if not model:
            raise ValueError("AGENT_MODEL must be non-empty")
        learning_mode = self.learning_mode.strip().lower()
        if learning_mode not in _LEARNING_MODES:
            raise ValueError("AGENT_LEARNING_MODE must be one of: off, apply, auto")
        if self.ci_poll_interval_s > self.ci_timeout_s:
            raise ValueError(
                f"AGENT_CI_POLL_INTERVAL_S must be <= AGENT_CI_TIMEOUT_S, got: "
                f"{self.ci_poll_interval_s} > {self.ci_timeout_s}"
            )
        # Parse eagerly so malformed JSON fails at startup rather than mid-run.
        _parse_verify_commands(self.verify_commands_json)
        _parse_severity_policy(self.severity_policy_json)
        return RuntimeSettings(
            **{
                **self.__dict__,
                "model": model,
                "learning_mode": learning_mode,
                "base_branch": self.base_branch.strip() or "main",
            }
        )

    def state_root_path(self, repo_root: Path) -> Path:
        path = Path(self.state_root)
        return path if path.is_absolute() else repo_root / path

    def to_controller_config(self) -> ControllerConfig:
        reviewers = tuple(item.strip() for item in self.reviewers.split(",") if item.strip())
        return ControllerConfig(
            verify=VerifyConfig(
                commands=_parse_verify_commands(self.verify_commands_json),
                fail_fast=self.verify_fail_fast,
                auto_fix=AutoFixConfig(enabled=self.auto_fix_enabled, max_attempts=self.auto_fix_max_attempts),
            ),
            review=ReviewConfig(
                max_iterations=self.review_max_iterations,
                ci_poll_interval_s=float(self.ci_poll_interval_s),
                ci_timeout_s=float(self.ci_timeout_s),
                intelligence=ReviewIntelligenceConfig(
                    enabled=self.review_intelligence_enabled,
                    severity_policy=_parse_severity_policy(self.severity_policy_json),
                ),
            ),
            github=GithubConfig(
                reviewers=reviewers,
                request_copilot=self.request_copilot,
                base_branch=self.base_branch,
            ),
            learning=LearningConfig(
                enabled=self.learning_enabled,
                mode=self.learning_mode,  # type: ignore[arg-type]
                ai_enabled=self.learning_ai_enabled,
                targets=LearningTargets(
                    rules=self.learning_rules_target or None,
                    skills=self.learning_skills_target or None,
                    docs=self.learning_docs_target or None,
                ),
                auto_apply=AutoApplyConfig(
                    enabled=self.learning_auto_apply,
                    threshold=self.learning_threshold,
                    min_samples=self.learning_min_samples,
                    lookback_days=self.learning_lookback_days,
                    max_history=self.learning_max_history,
                ),
            ),
            model=self.model,
        )


def _parse_verify_commands(raw: str) -> tuple[VerifyCommand, ...]:
    try:
        payload = json.loads(raw or "[]")
    except json.JSONDecodeError as exc:
        raise ValueError(f"AGENT_VERIFY_COMMANDS_JSON must be valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ValueError("AGENT_VERIFY_COMMANDS_JSON must be a JSON array of {name, cmd} objects")
    commands: list[VerifyCommand] = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("name") or not item.get("cmd"):
            raise ValueError(f"AGENT_VERIFY_COMMANDS_JSON entries need non-empty name and cmd, got: {item!r}")
        commands.append(VerifyCommand(name=str(item["name"]), cmd=str(item["cmd"])))
    return tuple(commands)


def _parse_severity_policy(raw: str) -> dict[str, str]:
    policy = dict(DEFAULT_SEVERITY_POLICY)
    if not raw.strip():
        return policy
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"AGENT_SEVERITY_POLICY_JSON must be valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("AGENT_SEVERITY_POLICY_JSON must be a JSON object")
    for severity, action in payload.items():
        if severity not in _SEVERITIES:
            raise ValueError(f"Unknown severity in AGENT_SEVERITY_POLICY_JSON: {severity!r}")
        if action not in _SEVERITY_ACTIONS:
            raise ValueError(f"Unknown severity action in AGENT_SEVERITY_POLICY_JSON: {action!r}")
        policy[severity] = action
    return policy


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")

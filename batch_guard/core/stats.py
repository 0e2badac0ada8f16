"""
Process-wide counters for a batch job.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict


@dataclass
class JobStats:
    """Aggregate counters updated by the orchestrator and the driver.

    Persisted alongside checkpoint records so a resumed job keeps counting
    from where it stopped.
    """
    calls_made: int = 0
    failed_calls: int = 0
    tokens_spent: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    retries: int = 0
    rotations: int = 0
    units_completed: int = 0
    units_failed: int = 0
    tokens_by_credential: Dict[str, int] = field(default_factory=dict)

    def add_tokens(self, credential_id: str, tokens: int) -> None:
        self.tokens_spent += tokens
        self.tokens_by_credential[credential_id] = (
            self.tokens_by_credential.get(credential_id, 0) + tokens
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStats":
        """Restore counters, ignoring keys this version does not know.

        Raises:
            ValueError: If a known counter has the wrong type
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (data or {}).items() if k in known}
        for name, value in values.items():
            if name == "tokens_by_credential":
                if not isinstance(value, dict) or not all(
                    isinstance(k, str) and _is_count(v) for k, v in value.items()
                ):
                    raise ValueError("'tokens_by_credential' must map credential ids to token counts")
            elif not _is_count(value):
                raise ValueError(f"'{name}' must be an integer, got {value!r}")
        if "tokens_by_credential" in values:
            values["tokens_by_credential"] = dict(values["tokens_by_credential"])
        return cls(**values)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)

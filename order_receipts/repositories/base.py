from __future__ import annotations

from typing import Any, Iterable


class ApplicantScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without an applicant key."""


class BaseRepository:
    def __init__(self, *, applicant_key: str | None = None) -> None:
        scope = str(applicant_key or "").strip()
        if not scope:
            raise ApplicantScopeRequiredError("applicant_key is required for repository access")
        self.applicant_key = scope

    def scoped_params(self, params: Iterable[Any] | None = None) -> tuple[Any, ...]:
        values = tuple(params or ())
        return (self.applicant_key, *values)

    @staticmethod
    def placeholders(count: int) -> str:
        return ", ".join("?" for _ in range(max(1, int(count))))

"""Per-tenant result of a scheduled pass."""

from dataclasses import dataclass, field


@dataclass
class TenantOutcome:
    tenant_id: str
    status: str
    summary: dict = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

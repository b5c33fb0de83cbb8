"""
Interfaces to the compliance platform consumed by the breach engine.

The rule-based risk scorer and the property portfolio live outside this
package. They are described here as typing Protocols together with the
value objects they return.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Protocol, runtime_checkable


@dataclass
class FactorBreakdown:
    """Counts and flags behind a property's statistical risk score."""
    expiring_certificates: int = 0
    overdue_certificates: int = 0
    open_defects: int = 0
    critical_defects: int = 0
    missing_streams: List[str] = field(default_factory=list)
    asset_age: Optional[float] = None
    is_hrb: bool = False
    has_vulnerable_occupants: bool = False
    epc_rating: Optional[str] = None


@dataclass
class RiskBreakdown:
    """Statistical risk score with its 0-100 sub-scores."""
    overall_score: int
    risk_tier: str
    expiry_risk_score: float = 0.0
    defect_risk_score: float = 0.0
    asset_profile_risk_score: float = 0.0
    coverage_gap_risk_score: float = 0.0
    external_factor_risk_score: float = 0.0
    factor_breakdown: FactorBreakdown = field(default_factory=FactorBreakdown)


@dataclass
class EntityHistory:
    """Recent certificate and remedial-action history for one property."""
    last_certificate_issued: Optional[date] = None
    open_actions: int = 0
    historical_breaches: int = 0


@runtime_checkable
class StatisticalScorer(Protocol):
    def compute_statistical_score(self, entity_id: str, organisation_id: str) -> RiskBreakdown:
        ...


@runtime_checkable
class PortfolioDirectory(Protocol):
    def list_entity_ids(self, organisation_id: str, limit: int) -> List[str]:
        ...

    def get_entity_history(self, entity_id: str) -> Optional[EntityHistory]:
        ...

"""Pydantic v2 schemas for railyard resources.

Every resource model serializes to camelCase (``model_dump(by_alias=True)``)
and accepts either snake_case or camelCase on input.

Example:
    >>> from railyard_core.schemas import Stage
    >>> Stage.model_validate({"metadata": {"namespace": "demo", "name": "test"}}).name
    'test'
"""

from __future__ import annotations

from railyard_core.schemas.analysis import (
    AnalysisRun,
    AnalysisRunSpec,
    AnalysisRunStatus,
    AnalysisTemplate,
    AnalysisTemplateSpec,
)
from railyard_core.schemas.conditions import Condition, ConditionStatus, ConditionType
from railyard_core.schemas.freight import (
    MAX_FREIGHT_HISTORY,
    ApprovedStage,
    Chart,
    Freight,
    FreightCollection,
    FreightHistory,
    FreightOrigin,
    FreightOriginKind,
    FreightReference,
    FreightStatus,
    GitCommit,
    Image,
    VerifiedStage,
)
from railyard_core.schemas.health import (
    Health,
    HealthCheckContext,
    HealthCheckStep,
    HealthState,
)
from railyard_core.schemas.meta import (
    API_GROUP,
    API_VERSION,
    ObjectKey,
    ObjectMeta,
    OwnerReference,
)
from railyard_core.schemas.project import Project, ProjectSpec, PromotionPolicy, Warehouse
from railyard_core.schemas.promotion import (
    Promotion,
    PromotionPhase,
    PromotionReference,
    PromotionSpec,
    PromotionStatus,
    PromotionStep,
    promotion_phase_is_terminal,
)
from railyard_core.schemas.stage import (
    FreightRequest,
    FreightSources,
    PromotionTemplate,
    PromotionTemplateSpec,
    Stage,
    StagePhase,
    StageSpec,
    StageStatus,
)
from railyard_core.schemas.verification import (
    MAX_VERIFICATION_HISTORY,
    AnalysisRunArgument,
    AnalysisRunMetadata,
    AnalysisRunReference,
    AnalysisTemplateReference,
    Verification,
    VerificationInfo,
    VerificationInfoStack,
    VerificationPhase,
    VerificationRequest,
)

__all__ = [
    "API_GROUP",
    "API_VERSION",
    "MAX_FREIGHT_HISTORY",
    "MAX_VERIFICATION_HISTORY",
    "AnalysisRun",
    "AnalysisRunArgument",
    "AnalysisRunMetadata",
    "AnalysisRunReference",
    "AnalysisRunSpec",
    "AnalysisRunStatus",
    "AnalysisTemplate",
    "AnalysisTemplateReference",
    "AnalysisTemplateSpec",
    "ApprovedStage",
    "Chart",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "Freight",
    "FreightCollection",
    "FreightHistory",
    "FreightOrigin",
    "FreightOriginKind",
    "FreightReference",
    "FreightRequest",
    "FreightSources",
    "FreightStatus",
    "GitCommit",
    "Health",
    "HealthCheckContext",
    "HealthCheckStep",
    "HealthState",
    "Image",
    "ObjectKey",
    "ObjectMeta",
    "OwnerReference",
    "Project",
    "ProjectSpec",
    "Promotion",
    "PromotionPhase",
    "PromotionPolicy",
    "PromotionReference",
    "PromotionSpec",
    "PromotionStatus",
    "PromotionStep",
    "PromotionTemplate",
    "PromotionTemplateSpec",
    "Stage",
    "StagePhase",
    "StageSpec",
    "StageStatus",
    "Verification",
    "VerificationInfo",
    "VerificationInfoStack",
    "VerificationPhase",
    "VerificationRequest",
    "VerifiedStage",
    "Warehouse",
    "promotion_phase_is_terminal",
]

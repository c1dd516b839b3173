"""
External collaborators

Contracts for data owned outside the opportunity core, with SQL-backed
read adapters:
- Pipeline/stage directory
- Product/bundle catalog
- User/account/contact references
- Record scope
"""

from .catalog import (
    BundleConfiguration,
    BundleItem,
    Product,
    ProductCatalog,
    SqlProductCatalog,
)
from .references import (
    AccountSummary,
    ContactSummary,
    NullReferenceDirectory,
    ReferenceDirectory,
    SqlReferenceDirectory,
    TeamMember,
    UserSummary,
)
from .requirements import (
    AnyOfFields,
    RequiredField,
    SingleField,
    parse_required_field,
    unmet_requirements,
)
from .scope import OwnRecordsScope, RecordScope, UnrestrictedScope
from .stages import (
    Pipeline,
    PipelineStage,
    SqlStageDirectory,
    StageDirectory,
    StageKind,
)

__all__ = [
    # Stages
    "Pipeline",
    "PipelineStage",
    "StageKind",
    "StageDirectory",
    "SqlStageDirectory",
    # Requirements
    "RequiredField",
    "SingleField",
    "AnyOfFields",
    "parse_required_field",
    "unmet_requirements",
    # Catalog
    "Product",
    "BundleItem",
    "BundleConfiguration",
    "ProductCatalog",
    "SqlProductCatalog",
    # References
    "UserSummary",
    "AccountSummary",
    "ContactSummary",
    "TeamMember",
    "ReferenceDirectory",
    "NullReferenceDirectory",
    "SqlReferenceDirectory",
    # Scope
    "RecordScope",
    "UnrestrictedScope",
    "OwnRecordsScope",
]

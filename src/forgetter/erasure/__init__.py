"""Erasure of user identities from the relational store and the analytics service.

Example Usage:
    ```python
    from forgetter.db import open_engine
    from forgetter.erasure import (
        DeletionProcedure,
        ErasureRequest,
        run_erasure,
        write_artifacts,
    )

    request = ErasureRequest(requested_by="dpo@example.com", identifiers=["u1", "u2"])
    procedure = DeletionProcedure.from_file("sql/gdpr-deletion.sql")

    async with open_engine(database_url) as engine:
        report = await run_erasure(request, engine=engine, procedure=procedure)

    write_artifacts(report, "out/")
    ```
"""

from forgetter.erasure.coordinator import run_erasure
from forgetter.erasure.external import (
    Delivered,
    DeliveryOutcome,
    ExternalOptions,
    PermanentFailure,
    TransientFailure,
    classify_response,
    erase_external,
    open_http_client,
    simulate_external,
)
from forgetter.erasure.loader import (
    deduplicate,
    load_identifiers,
    parse_identifiers,
    read_identifiers_file,
)
from forgetter.erasure.partition import partition
from forgetter.erasure.relational import (
    AuditStamp,
    DeletionProcedure,
    RelationalOptions,
    purge_relational,
)
from forgetter.erasure.report import build_report, render_summary, write_artifacts
from forgetter.erasure.types import (
    ErasureRequest,
    ExternalOutcome,
    ExternalStatus,
    IdentifierResult,
    IdentifierSet,
    RelationalOutcome,
    RelationalStatus,
    Report,
    Stage,
    TerminalStatus,
)

__all__ = [
    # Coordinator
    "run_erasure",
    # Loader
    "deduplicate",
    "load_identifiers",
    "parse_identifiers",
    "read_identifiers_file",
    "partition",
    # Relational
    "AuditStamp",
    "DeletionProcedure",
    "RelationalOptions",
    "purge_relational",
    # External
    "Delivered",
    "DeliveryOutcome",
    "ExternalOptions",
    "PermanentFailure",
    "TransientFailure",
    "classify_response",
    "erase_external",
    "open_http_client",
    "simulate_external",
    # Report
    "build_report",
    "render_summary",
    "write_artifacts",
    # Types
    "ErasureRequest",
    "ExternalOutcome",
    "ExternalStatus",
    "IdentifierResult",
    "IdentifierSet",
    "RelationalOutcome",
    "RelationalStatus",
    "Report",
    "Stage",
    "TerminalStatus",
]

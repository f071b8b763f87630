"""Storage layer - Database schemas and repositories."""

from pnode_monitor.storage.database import (
    DatabaseManager,
    StoreError,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from pnode_monitor.storage.models import (
    Base,
    CreditSnapshotModel,
    GossipObservationModel,
    IngestionRunModel,
    IngestionRunSeedStatsModel,
    NetworkCreditsStatModel,
    NetworkSeedVisibilityModel,
    NetworkSnapshotModel,
    NetworkVersionStatModel,
    PnodeModel,
    SeedModel,
    StatsSampleModel,
)
from pnode_monitor.storage.repos import (
    CreditSnapshotDTO,
    CreditSnapshotRepository,
    GossipObservationDTO,
    GossipObservationRepository,
    IngestionRunDTO,
    IngestionRunRepository,
    NetworkSnapshotDTO,
    NetworkSnapshotRepository,
    PnodeDTO,
    PnodeRepository,
    RunCounters,
    SeedDTO,
    SeedRepository,
    StatsSampleDTO,
    StatsSampleRepository,
)

__all__ = [
    "Base",
    "CreditSnapshotDTO",
    "CreditSnapshotModel",
    "CreditSnapshotRepository",
    "DatabaseManager",
    "GossipObservationDTO",
    "GossipObservationModel",
    "GossipObservationRepository",
    "IngestionRunDTO",
    "IngestionRunModel",
    "IngestionRunRepository",
    "IngestionRunSeedStatsModel",
    "NetworkCreditsStatModel",
    "NetworkSeedVisibilityModel",
    "NetworkSnapshotDTO",
    "NetworkSnapshotModel",
    "NetworkSnapshotRepository",
    "NetworkVersionStatModel",
    "PnodeDTO",
    "PnodeModel",
    "PnodeRepository",
    "RunCounters",
    "SeedDTO",
    "SeedModel",
    "SeedRepository",
    "StatsSampleDTO",
    "StatsSampleModel",
    "StatsSampleRepository",
    "StoreError",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]

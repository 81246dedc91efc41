from compliance_monitor.repositories.change_records import (
    InMemoryChangeRecordsRepository,
    PostgresChangeRecordsRepository,
)
from compliance_monitor.repositories.ledger import InMemoryChangeLedger, PostgresChangeLedger
from compliance_monitor.repositories.review_entries import (
    InMemoryReviewEntriesRepository,
    PostgresReviewEntriesRepository,
)
from compliance_monitor.repositories.run_summaries import (
    InMemoryRunSummariesRepository,
    PostgresRunSummariesRepository,
)

__all__ = [
    "InMemoryChangeLedger",
    "PostgresChangeLedger",
    "InMemoryChangeRecordsRepository",
    "PostgresChangeRecordsRepository",
    "InMemoryReviewEntriesRepository",
    "PostgresReviewEntriesRepository",
    "InMemoryRunSummariesRepository",
    "PostgresRunSummariesRepository",
]

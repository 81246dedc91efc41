from compliance_monitor.db.postgres import PostgresTxRunner, validate_identifier
from compliance_monitor.db.schema import apply_schema

__all__ = ["PostgresTxRunner", "apply_schema", "validate_identifier"]

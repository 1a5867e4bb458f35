"""
OptoReports — Institutional Survey Reports Backend (v1.4.0)

Architecture:
  optoreports/
  ├── config/       — Environment, survey constants, StorageConfig
  ├── answers/      — Value coercion + 84-slot answer normalization
  ├── fiscal/       — April→March fiscal calendar, month canonicalization
  ├── aggregation/  — Fiscal-year-to-date cumulative totals
  ├── reports/      — Identity, merge-safe answers, ReportService
  ├── db/           — FileStore / PostgresStore behind one contract
  └── server.py     — FastAPI routing layer

Dependencies point downwards only: server → reports → (aggregation, db) →
(fiscal, answers) → config.
"""

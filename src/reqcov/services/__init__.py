"""reqcov services.

- extractor: requirement code extraction from free text
- steps: steps XML parsing and run/definition step alignment
- relations, families: formal links and requirement families
- validator, coverage: the two report builders
- external_tables, external_ingestion, storage: uploaded spreadsheets
- backend_client, cache, suites, reports: backend access and orchestration
"""

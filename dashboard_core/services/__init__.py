"""
Services for the dashboard core.

- sync/: live-update coordination (push channel + fallback polling)
- aggregation/: pure reduction of records to summaries
- export/: server-rendered artifact downloads
"""

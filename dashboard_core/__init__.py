"""
Instructor dashboard live-data core.

Keeps attendance and payout numbers live through a push channel with a
polling fallback, aggregates raw records into summaries, and materializes
server-rendered export artifacts.
"""

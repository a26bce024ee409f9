"""Game domain services: ledger, buzzer, timers and persistence.

Everything here is transport free. Socket handlers and HTTP routes go
through ``GameSession.dispatch``; the session owns one instance of each
service and serializes their mutations.
"""

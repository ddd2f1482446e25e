"""
Test Suite for Incident Controller

This package contains all tests for the incident core:
- severity catalog, timeline log, runbook registry
- incident session state machine and SLA checks
- incident manager, collaborators, persistence and configuration
"""

"""
Knowledge store core: records, persistence and the store orchestrator.
"""

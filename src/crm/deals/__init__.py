"""Deals and the sales pipeline.

Provides the DealModel table, Pydantic payloads with the closed DealStage
enumeration, DealRepository for async CRUD and role-scoped reads, and the
pure pipeline aggregation and dashboard metric functions.
"""

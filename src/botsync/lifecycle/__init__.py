"""Bot lifecycle and recording reconciliation.

Provides the state store, webhook ingress, reconciliation poller, recording
resolver, usage/billing calculator and session termination coordinator,
together with their schemas, persistence models and repository.
"""

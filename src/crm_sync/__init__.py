"""CRM synchronization engine.

Keeps host-platform contacts consistent with HubSpot, Salesforce and
Pipedrive: provider adapters behind a shared rate limiter, a field mapping
engine, a pure conflict resolver, a per-connection sync orchestrator and a
scheduler driving recurring jobs.
"""

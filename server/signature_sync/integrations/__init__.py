"""
Integration modules for Signature Sync

Contains adapters and clients for external systems:
- E-signature provider (Evia Sign)
"""

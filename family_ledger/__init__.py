"""
Family Ledger - Source Package

The synchronization and conflict-resolution engine behind a shared
family expense ledger. Devices edit offline; a shared folder mirrored
by an external service is the only transport.

DESIGN PRINCIPLES:
1. Merges are deterministic and lossless
2. A failed remote read never deletes local data
3. No silent drops - every conflict decision is auditable
4. The snapshot only advances after a write succeeds
5. Storage adapters are swappable
"""

__version__ = "1.0.0"
__author__ = "Family Ledger Team"

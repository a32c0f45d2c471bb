"""
attendance-sync - decentralized state sync for QR-code attendance check-in.

An admin publishes a roster and opens a session; students reach the
session only through a scanned link and submit one attendance record each;
the admin watches submissions arrive live and exports a report. No central
server holds authority: every participant runs a Peer with its own graph
store, and relays only rebroadcast frames.

Architecture:
    ┌──────────────┐   ┌──────────────┐
    │ AdminConsole │   │StudentCheckIn│        (attendance)
    └──────┬───────┘   └──────┬───────┘
           │ ScopedWriter     │ public put
           ▼                  ▼
    ┌─────────────────────────────────┐   ┌──────────────────┐
    │  GraphStore (field-level LWW)   │──▶│SubscriptionEngine│──▶ live views
    └───────────────┬─────────────────┘   └──────────────────┘
                    │ listener
                    ▼
             ┌─────────────┐      ┌───────────┐      ┌─────────────┐
             │  SyncLayer  │◀────▶│ Transport │◀────▶│ RelayServer │◀──▶ other peers
             └─────────────┘      └───────────┘      └─────────────┘

Invariants:
    - Every write, local or remote, is a field-level last-write-wins merge
    - Any two peers holding the same set of writes hold the same graph
    - ``~<pub>`` paths belong to identity <pub>; other roots are public
    - Relays carry frames and never interpret them

How to change safely:
    - Keep field values scalar; nested data is expressed as child paths
    - Wire format changes must stay readable by older peers

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]

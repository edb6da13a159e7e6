"""Claim, detection and execution components of the agent.

Why no lock service?
~~~~~~~~~~~~~~~~~~~~
Several agents watch the same backend table through two racing channels
(push notifications and polling). Ownership of a work item is decided by a
single conditional row update that only succeeds while the row is still
pending and unclaimed. The local bookkeeping in this package (seen-set,
executing set) only avoids redundant backend calls and duplicate local
dispatch; it is never consulted to decide who owns a row.
"""

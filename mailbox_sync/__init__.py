"""
Mailbox Sync Service
Two-way synchronization between remote mailboxes and the local store, with listener failover
"""

__version__ = "1.0.0"

"""
PulseResQ Facility Escalation Dispatcher
========================================

Takes a detected patient emergency (location + vital signs) and works to get
a capable medical facility to accept responsibility for it.  Candidate
facilities around the patient are ranked by distance and capability, then
notified in ordered batches over progressively noisier channels (webhook,
SMS, WhatsApp, voice, email) until exactly one facility accepts or every
candidate has been tried.

Each escalation keeps an append-only, hash-chained log of every channel
attempt so the outcome can be audited after the fact.

DISCLAIMER: This is a best-effort, in-memory notification protocol.  It does
not replace emergency services and provides no delivery guarantee across
process restarts.
"""

__version__ = "0.1.0"

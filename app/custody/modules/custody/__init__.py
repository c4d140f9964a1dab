"""
Custody module.

Chain-of-custody tracking for physical objects:
- Every change of location, assignee, RFID tag or status is a ledger event
- Events are numbered per object without gaps and hash-chained
- The object row is a projection of its ledger and is only written together
  with the events that justify it
- Mutations on one object are serialized; different objects proceed in parallel
"""

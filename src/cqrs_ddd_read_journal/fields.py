"""Document field names of the journal and snapshot collections.

Both collections are written by the event-sourced write path in the
akka-persistence-mongo layout; this package only reads them.
"""

from __future__ import annotations

# Journal documents: {pid, from, to, _tg, events: [{pid, sn, manifest, _tg, p}]}
J_ID = "_id"
J_PROCESSOR_ID = "pid"
J_TO = "to"
J_TAGS = "_tg"
J_EVENT = "events"
J_EVENT_PID = "pid"
J_EVENT_SN = "sn"
J_EVENT_MANIFEST = "manifest"

# Snapshot documents: {pid, sn, ts, s2: {..., __lifecycle}}
S_ID = J_ID
S_PROCESSOR_ID = "pid"
S_SN = "sn"
S_TS = "ts"
S_SERIALIZED_SNAPSHOT = "s2"
LIFECYCLE = "__lifecycle"

# Timestamp ledger documents: {ts, tag}
T_TIMESTAMP = "ts"
T_TAG = "tag"

PRIORITY_TAG_PREFIX = "priority-"

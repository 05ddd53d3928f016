import threading
from datetime import datetime

# KDS realtime updates, read by the SSE stream in app.py
_kds_changes = []
_lock = threading.Lock()
_next_id = 1
_max_events = 500


def configure(max_events):
    global _max_events
    _max_events = max_events


def push_change(branch_id, event_type, payload):
    global _next_id
    with _lock:
        event = {
            'id': _next_id,
            'branch_id': branch_id,
            'event': event_type,
            'payload': payload,
            'time': datetime.utcnow().isoformat()
        }
        _next_id += 1
        _kds_changes.append(event)
        if len(_kds_changes) > _max_events:
            del _kds_changes[:len(_kds_changes) - _max_events]
    return event


def changes_since(branch_id, last_id=0):
    with _lock:
        return [e for e in _kds_changes if e['id'] > last_id and e['branch_id'] == branch_id]


def last_event_id():
    with _lock:
        return _kds_changes[-1]['id'] if _kds_changes else 0


def clear():
    with _lock:
        del _kds_changes[:]

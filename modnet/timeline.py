import threading


class MessageTimeline:
    """
    The message list of one open room, as a client sees it.

    Rows arrive three ways: the initial history fetch, realtime pushes and
    polling batches. The same message can arrive more than once (a push and
    the poll that follows it, or our own send and its echo), so every row is
    keyed by id and the list stays ordered by (created_at, id). Pushes and
    polls come in on different threads, so every access holds the lock.
    """

    def __init__(self, rows=None):
        self._lock = threading.RLock()
        self._rows = {}
        self.last_seen = None
        if rows:
            self.load(rows)

    def __len__(self):
        with self._lock:
            return len(self._rows)

    def __contains__(self, message_id):
        with self._lock:
            return message_id in self._rows

    def __iter__(self):
        return iter(self.messages)

    @property
    def messages(self):
        with self._lock:
            rows = list(self._rows.values())
        return sorted(rows, key=lambda r: (r['created_at'], r['id']))

    def get(self, message_id):
        with self._lock:
            return self._rows.get(message_id)

    def _see(self, row):
        created_at = row.get('created_at')
        if created_at and (self.last_seen is None or created_at > self.last_seen):
            self.last_seen = created_at

    def load(self, rows):
        """Replace the contents with a fresh history fetch."""
        with self._lock:
            self._rows = {}
            for row in rows:
                if not row.get('deleted_at'):
                    self._rows[row['id']] = row
                self._see(row)

    def add(self, row):
        with self._lock:
            if row['id'] in self._rows or row.get('deleted_at'):
                return False
            self._rows[row['id']] = row
            self._see(row)
            return True

    def merge(self, rows):
        """Merge a polling batch; returns the rows that were new."""
        with self._lock:
            return [row for row in rows if self.add(row)]

    def apply_update(self, row):
        with self._lock:
            if row.get('deleted_at'):
                self._rows.pop(row['id'], None)
            elif row['id'] in self._rows:
                self._rows[row['id']] = row

    def remove(self, message_id):
        with self._lock:
            return self._rows.pop(message_id, None)

    def parent_of(self, message):
        reply_to = message.get('reply_to_id')
        if reply_to is None:
            return None
        return self.get(reply_to)

    def thread(self, message):
        """Ancestors of a message, nearest first, up to the root or the first gap."""
        chain = []
        seen = {message['id']}
        with self._lock:
            parent = self.parent_of(message)
            while parent is not None and parent['id'] not in seen:
                chain.append(parent)
                seen.add(parent['id'])
                parent = self.parent_of(parent)
        return chain

    def reply_preview(self, message):
        parent = self.parent_of(message)
        if parent is None:
            return None
        sender = parent.get('students') or {}
        return {
            'displayname': sender.get('displayname'),
            'content': parent.get('content') or parent.get('attachment_name'),
        }

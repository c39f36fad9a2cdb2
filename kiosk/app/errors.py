class OfflineQueueError(Exception):
    """Base class for offline order queue failures."""


class StorageUnavailable(OfflineQueueError):
    """Local persistence refused the write (quota, disk, readonly db).

    Raised out of enqueue: an order that cannot be queued is a lost sale, so the
    operator has to see it.
    """


class Offline(OfflineQueueError):
    """A drain was requested while the order backend is unreachable."""


class SubmissionFailed(OfflineQueueError):
    def __init__(self, message: str, *, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class NotFound(OfflineQueueError):
    def __init__(self, theater_id: str, queue_id: str):
        super().__init__(f"queued order {queue_id} not found for theater {theater_id}")
        self.theater_id = theater_id
        self.queue_id = queue_id


class AlreadySyncing(OfflineQueueError):
    pass

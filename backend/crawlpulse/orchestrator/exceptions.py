class AttemptFailed(Exception):
    """An attempt ended without the crawl task completing; eligible for retry."""


class AttemptTimeout(AttemptFailed):
    pass


class HeartbeatTimeout(AttemptFailed):
    pass

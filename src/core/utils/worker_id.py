"""Collector instance ID generation using coolnames."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "") -> str:
    """Generate a unique, memorable instance ID.

    Used as the broker client suffix, the log filename suffix and the
    ``worker_id`` log context so several collectors can be told apart.

    Examples:
        >>> generate_worker_id()
        'brave-golden-tiger'
        >>> generate_worker_id("collector")
        'collector-swift-blue-falcon'
    """
    coolname_id = generate_slug(3)

    if prefix:
        return f"{prefix}-{coolname_id}"

    return coolname_id

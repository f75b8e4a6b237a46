"""Worker volume sizing."""

from collections.abc import Iterable

GIB = 1024**3

DEFAULT_BUFFER_GB = 5
DEFAULT_MIN_GB = 10
DEFAULT_MAX_GB = 100


def calculate_volume_size_gb(
    file_sizes: Iterable[int],
    *,
    buffer_gb: int = DEFAULT_BUFFER_GB,
    min_gb: int = DEFAULT_MIN_GB,
    max_gb: int = DEFAULT_MAX_GB,
) -> int:
    """Volume size in whole GB for downloading and extracting ``file_sizes``.

    ``ceil(total / 1 GiB) + buffer_gb`` clamped to ``[min_gb, max_gb]``
    (both inclusive).  The buffer absorbs extraction overhead; the clamp
    bounds cost and satisfies the provider's minimum.

    Args:
        file_sizes: Sizes in bytes of the files the worker will download.
        buffer_gb: Extra space added on top of the download size.
        min_gb: Smallest volume to create.
        max_gb: Largest volume to create.

    Returns:
        The volume size in GB.

    Raises:
        ValueError: If a size is negative or the bounds are inverted.
    """
    if max_gb < min_gb:
        msg = f"max_gb ({max_gb}) must be >= min_gb ({min_gb})"
        raise ValueError(msg)

    total_bytes = 0
    for size in file_sizes:
        if size < 0:
            msg = f"File sizes must be non-negative, got {size}"
            raise ValueError(msg)
        total_bytes += size

    size_gb = -(-total_bytes // GIB) + buffer_gb
    return max(min_gb, min(max_gb, size_gb))

"""
Partitioning helpers shared by the built-in planners.
"""


def split_id_range(start_id: int, end_id: int, size: int) -> list[tuple[int, int]]:
    """
    Split the inclusive id range ``[start_id, end_id]`` into chunks.

    Args:
        start_id: First id, inclusive.
        end_id: Last id, inclusive.
        size: Maximum ids per chunk.

    Returns:
        Inclusive ``(start, end)`` pairs in ascending order; empty if
        ``end_id < start_id``.
    """
    if size <= 0:
        raise ValueError("Range size must be positive")
    ranges = []
    current = start_id
    while current <= end_id:
        upper = min(current + size - 1, end_id)
        ranges.append((current, upper))
        current = upper + 1
    return ranges


def split_byte_range(length: int, chunk_bytes: int) -> list[tuple[int, int]]:
    """
    Split a blob of ``length`` bytes into ``(offset, bytes_to_read)`` chunks.

    A line belongs to the chunk in which it starts, so chunk boundaries do not
    need to fall on line breaks.
    """
    if chunk_bytes <= 0:
        raise ValueError("Chunk size must be positive")
    return [
        (offset, min(chunk_bytes, length - offset))
        for offset in range(0, length, chunk_bytes)
    ]

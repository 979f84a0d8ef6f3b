"""
Derived progress fields for an enrollment.

The stored progress is the set of completed video indices. Counts and the
completion percentage are recomputed from it and the course's current video
list on every read; none of them is ever persisted.
"""
from typing import Dict, Iterable, List


def valid_progress(progress: Iterable[int], total_videos: int) -> List[int]:
    """Stored indices that still point at a video, without duplicates.

    A course can lose videos after students completed them. Such stale
    indices stay in storage but do not count toward completion.
    """
    seen = set()
    valid = []
    for index in progress or []:
        if isinstance(index, bool) or not isinstance(index, int):
            continue
        if 0 <= index < total_videos and index not in seen:
            seen.add(index)
            valid.append(index)
    return valid


def completion_percentage(completed: int, total: int) -> int:
    """round(100 * completed / total), halves rounded up; 0 for an empty course."""
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def derive_progress(progress: Iterable[int], total_videos: int) -> Dict[str, int]:
    completed = len(valid_progress(progress, total_videos))
    return {
        "completedVideos": completed,
        "totalVideos": total_videos,
        "completionPercentage": completion_percentage(completed, total_videos),
    }


def average_percentage(percentages: Iterable[int]) -> int:
    """Rounded mean of completion percentages; 0 when there are none."""
    values = list(percentages)
    if not values:
        return 0
    return completion_percentage(sum(values), 100 * len(values))

"""
Redis key construction utilities.

Centralizes all Redis key construction to maintain consistency across the codebase.
"""


class RedisKeys:
    """Utility class for constructing Redis keys with consistent naming conventions."""

    PREFIX = "coach"

    # ============================================================================
    # Thread-related keys
    # ============================================================================

    @staticmethod
    def thread(thread_id: str) -> str:
        """Key for a full thread snapshot (JSON blob)."""
        return f"coach:thread:{thread_id}"

    @staticmethod
    def threads_index() -> str:
        """Key for the threads index (sorted set scored by updated_at)."""
        return "coach:threads:index"

    @staticmethod
    def thread_summaries() -> str:
        """Key for thread summaries (hash of thread_id -> summary JSON)."""
        return "coach:threads:summaries"

    @staticmethod
    def current_thread() -> str:
        """Key holding the id of the most recently active thread."""
        return "coach:threads:current"

    # ============================================================================
    # Helper methods
    # ============================================================================

    @staticmethod
    def all_index_keys() -> dict[str, str]:
        """
        Get all keys that make up the thread index.

        Returns:
            Dictionary mapping key names to their Redis keys
        """
        return {
            "index": RedisKeys.threads_index(),
            "summaries": RedisKeys.thread_summaries(),
            "current": RedisKeys.current_thread(),
        }

import logging
import threading
from typing import Dict, Tuple

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE = "SELECT * FROM data WHERE 1=1"

# Picked by pattern_id % 3
TEMPLATES = (
    "SELECT name FROM customers c JOIN sales s ON c.id = s.customer_id "
    "WHERE s.region = :region AND s.year = :year AND s.amount > :min_amount",
    "SELECT region, SUM(amount) AS total FROM sales WHERE year = :year GROUP BY region",
    "SELECT name, amount FROM customers c JOIN sales s ON c.id = s.customer_id "
    "WHERE s.year = :year ORDER BY s.amount DESC LIMIT :limit",
)


def generate_template(pattern_id: int) -> str:
    return TEMPLATES[pattern_id % len(TEMPLATES)]


class SchemaEvolver:
    """
    Bounded registry of fingerprint → pattern id.

    When full, the least used pattern is evicted; among equally used patterns
    the oldest registration (lowest id) goes first.
    """

    def __init__(self, max_patterns: int = 5000):
        self.max_patterns = max_patterns
        self._lock = threading.Lock()
        self._mappings: Dict[bytes, int] = {}
        self._counters: Dict[int, int] = {}
        self._pattern_id = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._mappings)

    def __contains__(self, fingerprint: bytes) -> bool:
        with self._lock:
            return fingerprint in self._mappings

    def get_query_template(self, fingerprint: bytes) -> str:
        with self._lock:
            pattern_id = self._mappings.get(fingerprint)
            if pattern_id is None:
                return FALLBACK_TEMPLATE
            self._counters[pattern_id] += 1
            return generate_template(pattern_id)

    def register_new_pattern(self, fingerprint: bytes) -> None:
        with self._lock:
            if fingerprint in self._mappings:
                return

            if len(self._mappings) >= self.max_patterns:
                self._evict_least_used()

            self._pattern_id += 1
            self._mappings[fingerprint] = self._pattern_id
            self._counters[self._pattern_id] = 1

    def resolve(self, fingerprint: bytes) -> str:
        """Register the fingerprint if it is new, then return its template."""
        self.register_new_pattern(fingerprint)
        return self.get_query_template(fingerprint)

    def usage_count(self, fingerprint: bytes) -> int:
        with self._lock:
            pattern_id = self._mappings.get(fingerprint)
            return 0 if pattern_id is None else self._counters[pattern_id]

    def _evict_least_used(self) -> None:
        victim_id = min(self._counters, key=self._eviction_key)
        fingerprint = next(fp for fp, pid in self._mappings.items() if pid == victim_id)
        del self._mappings[fingerprint]
        del self._counters[victim_id]
        logger.debug("Evicted pattern %s (fingerprint %s)", victim_id, fingerprint.hex())

    def _eviction_key(self, pattern_id: int) -> Tuple[int, int]:
        return self._counters[pattern_id], pattern_id

"""
Edit-distance matching of user tags against the alias table.
"""

from typing import Optional

from .aliases import AliasTable


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance (unit-cost insert, delete, substitute)."""
    m, n = len(a), len(b)
    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(m + 1):
        dp[i][0] = i
    for j in range(n + 1):
        dp[0][j] = j
    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if a[i - 1] == b[j - 1]:
                dp[i][j] = dp[i - 1][j - 1]
            else:
                dp[i][j] = 1 + min(dp[i - 1][j], dp[i][j - 1], dp[i - 1][j - 1])
    return dp[m][n]


def max_distance(length: int) -> int:
    """Allowed edit distance for a query of the given length.

    Short tags ("ai", "rp") only match exactly so they cannot drift into
    unrelated groups.
    """
    if length >= 6:
        return 2
    if length >= 4:
        return 1
    return 0


class FuzzyMatcher:
    """Finds the alias group closest to a tag that has no exact alias entry."""

    def __init__(self, aliases: AliasTable):
        self._aliases = aliases

    def best_match(self, normalized_query: str) -> Optional[str]:
        """
        Canonical name of the closest alias group, or None.

        Canonical names are scanned first; variant spellings are only
        consulted when no canonical name is within the threshold. Ties keep
        the first minimum found.
        """
        threshold = max_distance(len(normalized_query))
        best: Optional[str] = None
        best_distance = threshold + 1

        for canonical in self._aliases.canonicals():
            distance = edit_distance(normalized_query, canonical.lower())
            if distance < best_distance:
                best_distance = distance
                best = canonical

        if best is None:
            for variant, canonical in self._aliases.reverse_items():
                distance = edit_distance(normalized_query, variant)
                if distance < best_distance:
                    best_distance = distance
                    best = canonical

        return best

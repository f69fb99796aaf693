"""
Name similarity for Epic entity matching.

Plain Levenshtein edit distance normalized to a 0-1 score. Matching is
case- and surrounding-whitespace-insensitive; there is no token or phonetic
matching.
"""

def levenshtein_distance(a: str, b: str) -> int:
    """Number of single-character inserts, deletes and substitutions turning a into b"""
    # Keep the rows as short as the shorter string
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    current = [0] * (len(b) + 1)

    for i, char_a in enumerate(a, start=1):
        current[0] = i
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current[j] = min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost   # substitution
            )
        previous, current = current, previous

    return previous[len(b)]

def similarity_score(a: str, b: str) -> float:
    """1.0 for identical names (two blanks included), 0.0 when only one side is blank"""
    norm_a = (a or "").strip().lower()
    norm_b = (b or "").strip().lower()

    if norm_a == norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0

    distance = levenshtein_distance(norm_a, norm_b)
    return 1 - distance / max(len(norm_a), len(norm_b))

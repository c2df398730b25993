import re
from typing import Dict, Union

STRENGTH_LABELS = ["Very weak", "Weak", "Okay", "Strong", "Very strong"]
MIN_SCORE = 3


def password_strength(password: str) -> Dict[str, Union[int, str, bool]]:
    """
    Score a candidate password from 0 to 4.

    One point each for: at least 8 characters, an uppercase letter, a digit,
    and a character that is neither a letter nor a digit.

    Examples:
        >>> password_strength("abc")["label"]
        'Very weak'
        >>> password_strength("Secret123!")["is_strong_enough"]
        True
    """
    score = 0
    if len(password) >= 8:
        score += 1
    if re.search(r"[A-Z]", password):
        score += 1
    if re.search(r"[0-9]", password):
        score += 1
    if re.search(r"[^A-Za-z0-9]", password):
        score += 1

    return {
        "score": score,
        "label": STRENGTH_LABELS[score],
        "is_strong_enough": score >= MIN_SCORE,
    }

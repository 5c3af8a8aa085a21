"""
Paste id and device code generation.

Paste ids are short pronounceable tokens (alternating consonant and vowel
sounds) so they can be read out and typed by hand. Device codes are
8 random characters from A-Z0-9.
"""

import secrets
import string
import threading
from typing import Optional

CONSONANTS = [
    "b", "c", "d", "f", "g", "h", "j", "k", "l", "m", "n", "p",
    "r", "s", "t", "v", "w", "z",
    "bl", "br", "ch", "cl", "cr", "dr", "fl", "fr", "gl", "gr",
    "ph", "pl", "pr", "sh", "sk", "sl", "sp", "st", "th", "tr",
]
VOWELS = [
    "a", "e", "i", "o", "u", "y",
    "ai", "au", "ea", "ee", "ie", "oa", "oi", "oo", "ou",
]

FALLBACK_ALPHABET = string.ascii_letters + string.digits
FALLBACK_ID_LENGTH = 6

DEVICE_CODE_ALPHABET = string.ascii_uppercase + string.digits
DEVICE_CODE_LENGTH = 8
MAX_DEVICE_CODE_ATTEMPTS = 10_000


class PronounceableGenerator:
    """Builds tokens by alternating consonant and vowel units"""

    def __init__(self, min_length: int = 6, max_length: int = 10,
                 consonants=None, vowels=None):
        if min_length < 1 or max_length < min_length:
            raise ValueError(f"Invalid token length range {min_length}..{max_length}")
        self.min_length = min_length
        self.max_length = max_length
        self.consonants = list(consonants if consonants is not None else CONSONANTS)
        self.vowels = list(vowels if vowels is not None else VOWELS)

    def next(self) -> Optional[str]:
        """
        Generate one token.

        Returns:
            A lowercase token between min_length and max_length characters,
            or None if no token fitting the length range could be built

        Raises:
            RuntimeError: If the generator has no sounds to draw from
        """
        if not self.consonants or not self.vowels:
            raise RuntimeError("Pronounceable generator has no consonants or vowels configured")

        target = self.min_length + secrets.randbelow(self.max_length - self.min_length + 1)
        use_vowel = secrets.randbelow(2) == 0
        token = ""

        while len(token) < target:
            pool = self.vowels if use_vowel else self.consonants
            # Only fall back to single-letter units when a pair would overshoot
            fitting = [unit for unit in pool if len(token) + len(unit) <= self.max_length]
            if not fitting:
                break
            token += secrets.choice(fitting)
            use_vowel = not use_vowel

        if len(token) < self.min_length:
            return None
        return token


_local = threading.local()


def _keygen() -> PronounceableGenerator:
    """Return this thread's generator, creating it on first use"""
    keygen = getattr(_local, "keygen", None)
    if keygen is None:
        keygen = PronounceableGenerator()
        _local.keygen = keygen
    return keygen


def random_alphanumeric(length: int = FALLBACK_ID_LENGTH) -> str:
    return "".join(secrets.choice(FALLBACK_ALPHABET) for _ in range(length))


def generate_id() -> str:
    """
    Generate a paste id.

    Uses the pronounceable generator and falls back to 6 random alphanumeric
    characters if it fails. Never raises. Does not check for collisions.
    """
    try:
        paste_id = _keygen().next()
    except RuntimeError:
        paste_id = None
    return paste_id or random_alphanumeric()


def is_valid_device_code(value: Optional[str]) -> bool:
    """Check for exactly 8 characters from A-Z0-9"""
    if not value or len(value) != DEVICE_CODE_LENGTH:
        return False
    return all(c in DEVICE_CODE_ALPHABET for c in value)


def generate_unique_device_code(store) -> str:
    """
    Generate a device code that no live paste is owned by.

    Args:
        store: Anything with a known_owners() method, normally a PasteStore

    Returns:
        An 8 character code from A-Z0-9

    Raises:
        RuntimeError: If MAX_DEVICE_CODE_ATTEMPTS samples all collided
    """
    existing = store.known_owners()

    for _ in range(MAX_DEVICE_CODE_ATTEMPTS):
        device_code = "".join(secrets.choice(DEVICE_CODE_ALPHABET) for _ in range(DEVICE_CODE_LENGTH))
        if device_code not in existing:
            return device_code

    raise RuntimeError(
        f"Device code namespace exhausted: {MAX_DEVICE_CODE_ATTEMPTS} attempts "
        f"collided with {len(existing)} known devices"
    )

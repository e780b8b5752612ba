"""Title key construction for title-based candidate lookup."""

from __future__ import annotations

import unicodedata

from recman.config.datasources import DEFAULT_MIN_TITLE_KEY_LENGTH, DEFAULT_TITLE_ARTICLES

from .text_normalization import MAX_KEY_LENGTH, normalize_key

TITLE_KEY_MAX_LONG_WORDS = 3
TITLE_KEY_LONG_WORD_LENGTH = 3
TITLE_KEY_MAX_CHARACTERS = 35


def create_title_key(
    title: str | None,
    *,
    articles: tuple[str, ...] = DEFAULT_TITLE_ARTICLES,
    min_length: int = DEFAULT_MIN_TITLE_KEY_LENGTH,
) -> str | None:
    """Build the normalized title key, or None for empty or too-short titles.

    Only the leading part of a title is used: words are taken until more than
    three long words or more than 35 characters have been collected, so that
    subtitles and trailing statements do not split otherwise equal titles.
    Words are counted after punctuation is stripped from them.
    """
    if not title:
        return None
    stripped = (
        _strip_punctuation(word)
        for word in unicodedata.normalize("NFKC", title).casefold().split()
    )
    words = [word for word in stripped if word]
    if len(words) > 1 and words[0] in articles:
        words = words[1:]

    key_words: list[str] = []
    long_words = 0
    characters = 0
    for word in words:
        key_words.append(word)
        characters += len(word)
        if len(word) > TITLE_KEY_LONG_WORD_LENGTH:
            long_words += 1
        if long_words > TITLE_KEY_MAX_LONG_WORDS or characters > TITLE_KEY_MAX_CHARACTERS:
            break

    key = normalize_key(" ".join(key_words))[:MAX_KEY_LENGTH]
    if len(key) < min_length:
        return None
    return key


def build_title_keys(
    title: str | None,
    main_author: str | None,
    *,
    articles: tuple[str, ...] = DEFAULT_TITLE_ARTICLES,
    min_length: int = DEFAULT_MIN_TITLE_KEY_LENGTH,
) -> frozenset[str]:
    """Return the title key set, qualified by author surname when known."""
    title_key = create_title_key(title, articles=articles, min_length=min_length)
    if title_key is None:
        return frozenset()
    surname = author_surname_key(main_author)
    if surname:
        return frozenset({f"{title_key} {surname}"[:MAX_KEY_LENGTH]})
    return frozenset({title_key})


def author_surname_key(main_author: str | None) -> str:
    """Return the normalized surname part of a "Surname, Forename" heading."""
    if not main_author:
        return ""
    surname, _, _ = main_author.partition(",")
    return normalize_key(surname)


def _strip_punctuation(word: str) -> str:
    return "".join(character for character in word if character.isalnum())

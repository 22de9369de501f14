"""Keyword extraction and synonym expansion for lexical scoring."""

from __future__ import annotations

import re
import string

MAX_SYNONYM_TERMS = 10
MAX_EXPANSION_TERMS = 12

_EDGE_PUNCTUATION = string.punctuation + "“”‘’«»…"
_POSSESSIVE_RE = re.compile(r"['’]s$")
_INNER_SPLIT_RE = re.compile(r"[^\w]+")

STOPWORDS = frozenset(
    {
        "a", "about", "after", "all", "also", "am", "an", "and", "any", "are", "as", "at",
        "be", "been", "being", "but", "by", "can", "could", "did", "do", "does", "doing",
        "for", "from", "had", "has", "have", "having", "her", "here", "hers", "him", "his",
        "how", "i", "if", "in", "into", "is", "it", "its", "just", "let", "me", "mine", "my",
        "myself", "no", "not", "of", "on", "or", "our", "ours", "please", "she", "should",
        "so", "than", "that", "the", "their", "them", "then", "there", "these", "they",
        "this", "those", "to", "too", "us", "very", "was", "we", "were", "what", "whats",
        "when", "where", "which", "who", "whom", "why", "will", "with", "would", "you",
        "your", "yours", "tell", "know", "remember", "recall",
    }
)

SYNONYMS: dict[str, tuple[str, ...]] = {
    "timezone": ("time zone", "tz", "utc offset"),
    "birthday": ("birth date", "born", "anniversary"),
    "name": ("called", "nickname", "preferred name"),
    "preference": ("prefer", "like", "favorite"),
    "prefer": ("preference", "like", "favorite"),
    "favorite": ("prefer", "like", "preference"),
    "weather": ("forecast", "temperature", "rain"),
    "schedule": ("calendar", "meeting", "agenda"),
    "meeting": ("calendar", "call", "agenda"),
    "deadline": ("due date", "due", "milestone"),
    "project": ("codename", "initiative", "workstream"),
    "status": ("update", "progress", "state"),
    "address": ("location", "home", "lives"),
    "location": ("address", "city", "where"),
    "email": ("mail", "inbox", "contact"),
    "phone": ("number", "mobile", "contact"),
    "job": ("work", "role", "employer"),
    "work": ("job", "role", "office"),
    "allergy": ("allergic", "intolerance", "diet"),
    "diet": ("food", "meal", "allergy"),
    "pronouns": ("they", "gender", "identity"),
    "identity": ("name", "pronouns", "profile"),
    "travel": ("trip", "flight", "itinerary"),
    "budget": ("spending", "expenses", "cost"),
    "deploy": ("deployment", "release", "rollout"),
    "deployment": ("deploy", "release", "region"),
    "incident": ("outage", "alert", "postmortem"),
    "password": ("credential", "login", "secret"),
}


def _stem(token: str) -> str:
    if token.endswith("ing") and len(token) > 5:
        return token[:-3]
    if token.endswith("ed") and len(token) > 4:
        return token[:-2]
    if token.endswith("es") and len(token) > 4:
        return token[:-2]
    if token.endswith("s") and not token.endswith("ss") and len(token) > 3:
        return token[:-1]
    return token


def _raw_tokens(text: str) -> list[str]:
    tokens: list[str] = []
    for word in str(text or "").lower().split():
        word = word.strip(_EDGE_PUNCTUATION)
        word = _POSSESSIVE_RE.sub("", word)
        tokens.extend(part for part in _INNER_SPLIT_RE.split(word) if part)
    return tokens


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens (letters, digits, underscore)."""
    return re.findall(r"\w+", str(text or "").lower())


def token_set_with_stems(text: str) -> set[str]:
    tokens = set(tokenize(text))
    return tokens | {_stem(token) for token in tokens}


def extract_keywords(query: str) -> list[str]:
    """Normalized, de-duplicated keywords (plus stems) in first-appearance order."""
    keywords: list[str] = []
    seen: set[str] = set()
    for token in _raw_tokens(query):
        if len(token) < 3 or token in STOPWORDS or token.isdigit():
            continue
        candidates = [token]
        stem = _stem(token)
        if stem != token and len(stem) >= 3:
            candidates.append(stem)
        for candidate in candidates:
            if candidate not in seen:
                seen.add(candidate)
                keywords.append(candidate)
    return keywords


def expand_query(query: str) -> str:
    """Append a bounded set of table synonyms not already in ``query``."""
    original = str(query or "")
    keywords = extract_keywords(original)
    if not keywords:
        return original
    lowered = original.lower()
    additions: list[str] = []
    term_count = 0
    for keyword in keywords:
        for synonym in SYNONYMS.get(keyword, ()):
            if len(additions) >= MAX_SYNONYM_TERMS:
                break
            if synonym in lowered or synonym in additions:
                continue
            words = len(synonym.split())
            if term_count + words > MAX_EXPANSION_TERMS:
                continue
            additions.append(synonym)
            term_count += words
    if not additions:
        return original
    return f"{original} {' '.join(additions)}"

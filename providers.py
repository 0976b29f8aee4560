from dataclasses import dataclass
from typing import Optional

from rapidfuzz.distance import Levenshtein


@dataclass(frozen=True)
class Provider:
    name: str
    logo: str


KNOWN_PROVIDERS: tuple[Provider, ...] = (
    Provider("Netflix", "/netflix.svg"),
    Provider("iCloud+", "/icloudplus.svg"),
    Provider("Apple Music", "/apple-music.svg"),
    Provider("ChatGPT Plus", "/openai-plus.svg"),
    Provider("Perplexity", "/perplexity.svg"),
    Provider("Youtube", "/youtube.svg"),
    Provider("Google One", "/google-one.svg"),
)

DEFAULT_PROVIDER_LOGO = "/placeholder-logo.svg"


def provider_logo(name: str) -> str:
    lowered = name.strip().lower()
    for provider in KNOWN_PROVIDERS:
        if provider.name.lower() == lowered:
            return provider.logo
    return DEFAULT_PROVIDER_LOGO


def canonical_provider_name(name: str) -> str:
    """Snap a typed provider name onto the known list when it is one edit away.

    Free-text names that are not close to a known provider, or are equally
    close to several, are returned stripped but otherwise untouched.
    """
    clean = name.strip()
    if not clean:
        raise ValueError("Provider name cannot be empty")
    input_lower = clean.lower()

    best_distance: Optional[int] = None
    best: list[Provider] = []
    for provider in KNOWN_PROVIDERS:
        dist = int(Levenshtein.distance(input_lower, provider.name.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [provider]
        elif dist == best_distance:
            best.append(provider)

    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0].name
    return clean

"""Human-friendly names such as ``swift-river`` for sessions and plans."""

from __future__ import annotations

import random
from collections.abc import Collection
from uuid import uuid4

ADJECTIVES = (
    "amber", "autumn", "azure", "bold", "brave", "breezy", "bright", "brisk",
    "bronze", "calm", "clear", "clever", "copper", "coral", "crimson", "crisp",
    "daring", "dawn", "dusky", "eager", "ebony", "emerald", "fair", "fearless",
    "fleet", "foggy", "frosty", "gentle", "glad", "golden", "grand", "hardy",
    "hazy", "honest", "humble", "icy", "indigo", "iron", "ivory", "jade",
    "jolly", "keen", "kind", "lively", "loyal", "lucky", "marble", "merry",
    "misty", "modest", "noble", "olive", "pale", "patient", "pearl", "proud",
    "quick", "quiet", "rapid", "ready", "rosy", "royal", "ruby", "rustic",
    "sage", "sandy", "scarlet", "sharp", "silent", "silver", "sleek", "slate",
    "smooth", "snowy", "solid", "spry", "stable", "steady", "steel", "still",
    "stormy", "sturdy", "subtle", "sunny", "swift", "tawny", "tender", "tidy",
    "true", "twilight", "violet", "vivid", "warm", "wary", "wild", "windy",
    "wise", "witty",
)

NOUNS = (
    "acorn", "alder", "arch", "aspen", "aurora", "badger", "basin", "bay",
    "beacon", "birch", "bluff", "bramble", "breeze", "brook", "canyon", "cedar",
    "cliff", "clover", "comet", "cove", "crane", "creek", "crest", "delta",
    "dune", "eagle", "ember", "falcon", "fern", "field", "finch", "fjord",
    "flame", "forest", "fox", "frost", "glade", "glen", "gorge", "grove",
    "gull", "harbor", "hare", "hawk", "hazel", "heath", "heron", "hill",
    "hollow", "inlet", "island", "ivy", "knoll", "lagoon", "lake", "lark",
    "laurel", "ledge", "lynx", "maple", "marsh", "meadow", "mesa", "moon",
    "moss", "oasis", "orchid", "otter", "owl", "peak", "pine", "plain",
    "pond", "prairie", "rain", "raven", "reef", "ridge", "river", "robin",
    "rowan", "shore", "sky", "slope", "spark", "sparrow", "spruce", "star",
    "storm", "stream", "summit", "swan", "thistle", "thrush", "tide", "trail",
    "vale", "valley", "willow", "wolf", "wren", "zenith",
)

DEFAULT_ATTEMPTS = 10


def generate_name(rng: random.Random | None = None) -> str:
    chooser = rng or random
    return f"{chooser.choice(ADJECTIVES)}-{chooser.choice(NOUNS)}"


def random_suffix() -> str:
    return uuid4().hex[:4]


def generate_unique_name(
    existing: Collection[str],
    attempts: int = DEFAULT_ATTEMPTS,
    rng: random.Random | None = None,
) -> str:
    for _ in range(attempts):
        name = generate_name(rng)
        if name not in existing:
            return name
    return f"{generate_name(rng)}-{random_suffix()}"

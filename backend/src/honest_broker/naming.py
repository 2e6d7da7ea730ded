"""Surrogate identifier generation for local brokers."""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

from .config import BrokerConfig, NamingScheme
from .deadline import Deadline
from .errors import ConfigurationError, InvalidInputError, LookupTimeoutError, ScriptExecutionError
from .sandbox import ScriptSandbox
from .store import CrosswalkStore


logger = logging.getLogger(__name__)

DEFAULT_DIGEST_SIZE = 4
SEQUENTIAL_WIDTH = 4
MAX_SUFFIX_ATTEMPTS = 10_000

ADJECTIVES = (
    "admiring", "adoring", "agile", "amazing", "amused", "awesome", "blissful", "bold",
    "brave", "bright", "busy", "calm", "charming", "cheerful", "clever", "cool",
    "cosmic", "curious", "daring", "dazzling", "determined", "dreamy", "eager", "earnest",
    "elated", "elegant", "epic", "fearless", "festive", "focused", "friendly", "frosty",
    "funny", "gallant", "gentle", "gifted", "glad", "gracious", "happy", "hardy",
    "hopeful", "humble", "jolly", "jovial", "keen", "kind", "lively", "loyal",
    "lucid", "lucky", "magical", "merry", "mighty", "modest", "nifty", "noble",
    "optimistic", "patient", "peaceful", "pensive", "placid", "plucky", "polite", "proud",
    "quick", "quiet", "quirky", "radiant", "relaxed", "serene", "sharp", "shiny",
    "silly", "sleepy", "smart", "snappy", "steady", "stoic", "sunny", "sweet",
    "swift", "tender", "thankful", "tidy", "trusty", "upbeat", "valiant", "vibrant",
    "vigilant", "vivid", "warm", "wise", "witty", "wonderful", "youthful", "zealous",
    "zen", "zesty",
)

ANIMALS = (
    "albatross", "alpaca", "antelope", "armadillo", "badger", "beaver", "bison", "bobcat",
    "buffalo", "camel", "capybara", "caribou", "cheetah", "chinchilla", "cobra", "condor",
    "coyote", "crane", "dingo", "dolphin", "donkey", "dove", "eagle", "egret",
    "elephant", "elk", "emu", "falcon", "ferret", "finch", "flamingo", "fox",
    "gazelle", "gecko", "gibbon", "giraffe", "gopher", "gorilla", "grouse", "hamster",
    "hare", "hawk", "hedgehog", "heron", "hippo", "hornbill", "hyena", "ibex",
    "ibis", "iguana", "impala", "jackal", "jaguar", "kestrel", "kingfisher", "koala",
    "kudu", "lemur", "leopard", "lion", "llama", "lynx", "macaw", "magpie",
    "manatee", "marmot", "meerkat", "mongoose", "moose", "narwhal", "newt", "ocelot",
    "octopus", "okapi", "orca", "oryx", "osprey", "otter", "owl", "panda",
    "panther", "parrot", "pelican", "penguin", "puffin", "puma", "quail", "quokka",
    "rabbit", "raccoon", "raven", "reindeer", "robin", "salamander", "seal", "sparrow",
    "squirrel", "stork", "swan", "tapir", "tiger", "toucan", "turtle", "walrus",
    "weasel", "whale", "wolf", "wombat", "wren", "yak", "zebra",
)

COLORS = (
    "amber", "aqua", "azure", "beige", "black", "blue", "bronze", "brown",
    "cerulean", "charcoal", "copper", "coral", "cream", "crimson", "cyan", "ebony",
    "emerald", "fuchsia", "gold", "gray", "green", "indigo", "ivory", "jade",
    "khaki", "lavender", "lilac", "lime", "magenta", "maroon", "mint", "navy",
    "ochre", "olive", "orange", "peach", "pink", "plum", "purple", "red",
    "rose", "ruby", "rust", "saffron", "salmon", "sapphire", "scarlet", "silver",
    "tan", "teal", "turquoise", "violet", "white", "yellow",
)

NATO_ALPHABET = (
    "alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf", "hotel",
    "india", "juliet", "kilo", "lima", "mike", "november", "oscar", "papa",
    "quebec", "romeo", "sierra", "tango", "uniform", "victor", "whiskey", "xray",
    "yankee", "zulu",
)


def subject_code_gen(input_string: str, key_string: str, digest_size: int = DEFAULT_DIGEST_SIZE) -> str:
    """Generate a keyed BLAKE2b hex digest of ``input_string``."""

    key_bytes = key_string.encode("utf-8")
    hasher = hashlib.blake2b(input_string.encode("utf-8"), key=key_bytes, digest_size=digest_size)
    return hasher.hexdigest()


def identifier_seed(id_in: str) -> int:
    """Stable 64-bit seed derived from the identifier itself."""

    digest = hashlib.sha256(id_in.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def require_identifier(id_in: Optional[str]) -> str:
    if id_in is None or not str(id_in).strip():
        raise InvalidInputError("Identifier must not be empty")
    return id_in


class NamingSchemeEngine:
    """Produces candidate surrogates for a broker's naming scheme.

    Store-dependent schemes (sequential and every scheme with collision
    suffixes) read the crosswalk, so callers must hold the broker's assignment
    lock while generating and committing.
    """

    def __init__(self, store: CrosswalkStore, sandbox: Optional[ScriptSandbox] = None) -> None:
        self._store = store
        self._sandbox = sandbox

    def generate(
        self,
        broker: BrokerConfig,
        id_in: str,
        id_type: str,
        mapping_count: int,
        *,
        deadline: Optional[Deadline] = None,
    ) -> str:
        require_identifier(id_in)
        try:
            scheme = NamingScheme(broker.naming_scheme)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported naming scheme '{broker.naming_scheme}'") from exc

        prefix = broker.prefix_for(id_type)
        if scheme == NamingScheme.SEQUENTIAL:
            return self._sequential(broker, id_in, id_type, prefix, mapping_count)
        if scheme == NamingScheme.HASH:
            digest = subject_code_gen(id_in, broker.name, digest_size=broker.hash_digest_size).upper()
            return self._unique(broker, id_in, id_type, f"{prefix}-{digest}")
        if scheme == NamingScheme.SCRIPT:
            return self._script(broker, id_in, id_type, prefix, mapping_count, deadline)

        seed = identifier_seed(id_in)
        if scheme == NamingScheme.ADJECTIVE_ANIMAL:
            base = self._themed(prefix, ADJECTIVES, seed)
        elif scheme == NamingScheme.COLOR_ANIMAL:
            base = self._themed(prefix, COLORS, seed)
        else:
            word = NATO_ALPHABET[seed % len(NATO_ALPHABET)]
            number = (seed // len(NATO_ALPHABET)) % 100
            base = f"{prefix}-{word}-{number:02d}".upper()
        return self._unique(broker, id_in, id_type, base)

    @staticmethod
    def _themed(prefix: str, qualifiers: tuple[str, ...], seed: int) -> str:
        qualifier = qualifiers[seed % len(qualifiers)]
        animal = ANIMALS[(seed // len(qualifiers)) % len(ANIMALS)]
        return f"{prefix}-{qualifier}-{animal}".upper()

    def _is_free(self, broker: BrokerConfig, id_in: str, id_type: str, candidate: str) -> bool:
        owner = self._store.find_id_in(broker.name, id_type, candidate)
        return owner is None or owner == id_in

    def _unique(self, broker: BrokerConfig, id_in: str, id_type: str, base: str) -> str:
        if self._is_free(broker, id_in, id_type, base):
            return base
        for suffix in range(1, MAX_SUFFIX_ATTEMPTS):
            candidate = f"{base}-{suffix}"
            if self._is_free(broker, id_in, id_type, candidate):
                logger.info("Naming collision on broker %s resolved with suffix %d", broker.name, suffix)
                return candidate
        raise ConfigurationError(f"Naming scheme for broker '{broker.name}' is exhausted")

    def _sequential(self, broker: BrokerConfig, id_in: str, id_type: str, prefix: str, mapping_count: int) -> str:
        counter = mapping_count + 1
        for _ in range(MAX_SUFFIX_ATTEMPTS):
            candidate = f"{prefix}-{counter:0{SEQUENTIAL_WIDTH}d}"
            if self._is_free(broker, id_in, id_type, candidate):
                return candidate
            counter += 1
        raise ConfigurationError(f"Sequential counter for broker '{broker.name}' is exhausted")

    def _script(
        self,
        broker: BrokerConfig,
        id_in: str,
        id_type: str,
        prefix: str,
        mapping_count: int,
        deadline: Optional[Deadline],
    ) -> str:
        if not broker.lookup_script:
            raise ConfigurationError(f"Broker '{broker.name}' uses the script scheme without a lookup script")
        if self._sandbox is None:
            raise ConfigurationError("Script naming scheme requires a script sandbox")

        timeout = self._sandbox.timeout_seconds
        deadline_bound = False
        if deadline is not None:
            bounded = deadline.bound(timeout)
            deadline_bound = bounded is not None and bounded < timeout
            timeout = bounded
            if timeout is not None and timeout <= 0:
                raise LookupTimeoutError("Deadline exceeded before running the lookup script")

        context = {"brokerName": broker.name, "mappingCount": mapping_count}
        try:
            return self._sandbox.run(
                broker.lookup_script,
                id_in=id_in,
                id_type=id_type,
                prefix=prefix,
                context=context,
                timeout=timeout,
            )
        except ScriptExecutionError as exc:
            if deadline_bound and deadline is not None and deadline.expired:
                raise LookupTimeoutError("Deadline exceeded while running the lookup script") from exc
            raise

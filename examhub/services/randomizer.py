import random
from typing import List, Optional, Sequence, TypeVar

T = TypeVar("T")

def order_questions(bindings: Sequence[T], randomize: bool, rng: Optional[random.Random] = None) -> List[T]:
    """Presented order for one attempt: as bound, or a fresh shuffle. Nothing is seeded or stored."""
    ordered = list(bindings)
    if randomize: (rng or random).shuffle(ordered)
    return ordered

def order_options(options: Sequence[T], randomize: bool, rng: Optional[random.Random] = None) -> List[T]:
    return order_questions(options, randomize, rng)

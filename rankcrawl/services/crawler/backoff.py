from dataclasses import dataclass, field


@dataclass
class ExponentialBackoff:
    """Per-key retry state for rate-limited requests.

    Delays double from `initial` up to `maximum`. Once the summed delays would
    pass `max_elapsed`, next_delay() returns None and the caller gives up on
    the key. A max_elapsed of 0 never gives up.
    """

    initial: float = 1.0
    maximum: float = 15 * 60
    max_elapsed: float = 60 * 60
    multiplier: float = 2.0

    attempts: int = field(default=0, init=False)
    elapsed: float = field(default=0.0, init=False)
    current: float = field(default=0.0, init=False)

    def __post_init__(self):
        self.reset()

    def reset(self) -> None:
        self.attempts = 0
        self.elapsed = 0.0
        self.current = min(self.initial, self.maximum)

    def next_delay(self) -> float | None:
        delay = self.current
        if self.max_elapsed and self.elapsed + delay > self.max_elapsed:
            return None
        self.attempts += 1
        self.elapsed += delay
        self.current = min(self.current * self.multiplier, self.maximum)
        return delay

class InvalidTimezone(ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown timezone: {name!r}")
        self.name = name


class InvalidWindow(ValueError):
    pass


class StoreError(RuntimeError):
    pass


class StoreReadFailure(StoreError):
    pass


class StoreWriteFailure(StoreError):
    pass


class PartialTaggingFailure(RuntimeError):
    """A bulk tagging run stopped at a failed write.

    ``applied_so_far`` counts the tag changes written before the failure; the
    original error is available as ``__cause__``.
    """

    def __init__(self, applied_so_far: int) -> None:
        super().__init__(
            f"Auto-tagging stopped after {applied_so_far} updates because a write failed"
        )
        self.applied_so_far = applied_so_far

class NotFoundError(LookupError):
    pass


class AvailabilityError(ValueError):
    pass

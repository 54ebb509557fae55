"""Exception taxonomy for the tracking pipeline."""


class EngineError(Exception):
    """Base class for errors raised by the engine."""


class ValidationError(EngineError):
    """A fix is malformed or physically impossible; it is rejected."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail


class StaleInputError(EngineError):
    """A fix is not newer than the last accepted fix for its bus."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail


class InvalidRoute(EngineError):
    pass


class NoRouteData(EngineError):
    """No route geometry is known for the requested route."""

    def __init__(self, route_id: str | None) -> None:
        super().__init__(f"No route geometry for route {route_id!r}")
        self.route_id = route_id


class BusNotFound(EngineError, KeyError):
    def __init__(self, bus_id: str) -> None:
        super().__init__(f"Bus {bus_id!r} is not tracked")
        self.bus_id = bus_id

    def __str__(self) -> str:
        return self.args[0]


class SubscriberDeliveryFailure(EngineError):
    """A message could not be queued for a subscriber."""

    def __init__(self, client_id: str, topic: str) -> None:
        super().__init__(f"Delivery to client {client_id} on {topic} failed")
        self.client_id = client_id
        self.topic = topic

"""Error taxonomy shared by the core network layer and the harness."""


class HarnessError(Exception):
    """Base class for every error raised by dht-tester."""


class ConfigError(HarnessError):
    """Invalid configuration or command line value."""


class KeyLoadError(HarnessError):
    """A persisted node key exists but cannot be used."""


class NodeCreateError(HarnessError):
    """The network endpoint or the DHT of a host could not be created."""


class BootstrapError(HarnessError):
    """A host could not join the overlay."""


class FailedToBootstrapError(BootstrapError):
    """Every attempted bootstrap connection failed."""

    def __init__(self, attempted: int = 0):
        super().__init__("failed to bootstrap to any bootnode")
        self.attempted = attempted


class ProvideError(HarnessError):
    """A provider record could not be announced."""


class ProviderLookupError(HarnessError):
    """A provider lookup failed at the transport or protocol level."""


class ShutdownError(HarnessError):
    """Closing a host or the fleet failed."""


class IndexOutOfRangeError(HarnessError):
    """A control-plane request targeted a host index outside the fleet."""

    def __init__(self, index: int, count: int):
        super().__init__(f"index out of range: {index} (num hosts {count})")
        self.index = index
        self.count = count


class RPCError(HarnessError):
    """An error returned by the control-plane server or its transport."""

    def __init__(self, code: int, message: str):
        super().__init__(f"server error {code}: {message}")
        self.code = code
        self.message = message

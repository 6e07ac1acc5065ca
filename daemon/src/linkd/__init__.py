"""linkd - link a device to a messaging account and hand back its credential."""

__version__ = "0.1.0"

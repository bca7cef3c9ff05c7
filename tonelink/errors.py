# errors.py
#
# Exception hierarchy shared by the engine, the codec wrapper and the host.


class ToneLinkError(Exception):
    """Base class for every error raised by tonelink."""


class ConfigurationError(ToneLinkError, ValueError):
    """A parameter set that would overflow the fixed buffers or exceed Nyquist."""


class UncorrectableError(ToneLinkError):
    """A Reed-Solomon codeword carried more byte errors than its parity can fix."""


class DeviceError(ToneLinkError):
    """An audio device could not be opened with the format the engine needs."""

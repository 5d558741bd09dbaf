from __future__ import annotations


class ToWebPError(Exception):
    """Base class for everything the converter raises on purpose."""


# ----- Run-level: nothing gets scheduled -----

class FatalError(ToWebPError):
    pass


class InvalidInputPath(FatalError):
    pass


class NotAnImage(FatalError):
    pass


class NoImagesFound(FatalError):
    pass


class InsufficientSpace(FatalError):
    pass


class ScratchDirectoryUnavailable(FatalError):
    pass


class RunCancelled(ToWebPError):
    """Raised between windows once a cancel has been requested."""


# ----- Per file: recorded in the run's failed list, the run continues -----

class ConversionFailure(ToWebPError):
    pass


class SourceUnreadable(ConversionFailure):
    pass


class CodecError(ConversionFailure):
    pass


class EmptyOutput(ConversionFailure):
    pass


class DestinationWriteError(ConversionFailure):
    pass

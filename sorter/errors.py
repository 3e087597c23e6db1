"""
errors.py — Failure types raised across the sorter.

  ConfigurationError  bad config file or camera setup. Fatal at startup.
  AcquisitionError    no frame within the timeout.
  ActuationError      the driver could not set or clear a channel.

"No candidate this frame" is NOT an error and has no type here.
"""


class SorterError(Exception):
    pass


class ConfigurationError(SorterError):
    pass


class AcquisitionError(SorterError):
    pass


class ActuationError(SorterError):

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message)
        self.channel = channel

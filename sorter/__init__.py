"""Colour / size brick sorter: camera → HSV detection → PWM sorting gates."""

__version__ = "0.1.0"

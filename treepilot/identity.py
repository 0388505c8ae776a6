"""TREEPILOT identity constants."""

__version__ = "0.3.0"
__codename__ = "TREEPILOT"
__tagline__ = "Ask. Review. Approve."

BANNER = r"""
 _____ ____  _____ _____ ____ ___ _     ___ _____
|_   _|  _ \| ____| ____|  _ \_ _| |   / _ \_   _|
  | | | |_) |  _| |  _| | |_) | || |  | | | || |
  | | |  _ <| |___| |___|  __/| || |__| |_| || |
  |_| |_| \_\_____|_____|_|  |___|_____\___/ |_|
"""

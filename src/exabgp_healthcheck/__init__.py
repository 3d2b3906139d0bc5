"""
ExaBGP health-check supervisor.

Runs a check command for a configured service and announces or withdraws
the service's prefixes to ExaBGP on stdout, with rise/fall hysteresis,
disable-file gating and safe configuration hot-reload.
"""

__version__ = "0.5.0"

"""Container engines wrapped by the format drivers.

Each engine owns one byte layout and exposes only open/read/write/list
primitives; the drivers in ``strategos.formats`` depend on nothing else.
"""

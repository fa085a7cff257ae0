"""Building blocks for a forwarding DNS proxy: caching, DNS64, fastest-address selection, upstream exchange and configuration."""

__version__ = "0.1.0"
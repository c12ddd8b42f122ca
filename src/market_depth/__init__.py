"""Order-book depth collector for third-party market histograms."""

__version__ = "0.1.0"

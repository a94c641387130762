"""Controller projecting HTTPFilterPolicy resources onto Istio EnvoyFilters."""

__version__ = "0.1.0"

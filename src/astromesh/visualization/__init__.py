"""Check-image plotting."""

from astromesh.visualization.plotter import CheckPlotter, PlotterThread, load_products

__all__ = ['CheckPlotter', 'PlotterThread', 'load_products']

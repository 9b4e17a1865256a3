"""PDF report rendering and chart pages."""

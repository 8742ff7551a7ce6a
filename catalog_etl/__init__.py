"""Multi-retailer catalog crawling: category discovery, product scraping and scheduling."""

__version__ = "0.1.0"

"""sfgate - resilient access layer for the Salesforce REST and Streaming APIs"""

__version__ = "0.1.0"

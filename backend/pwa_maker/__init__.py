"""PWA Maker backend: turns a Progressive Web App into a signed Android APK."""

__version__ = "1.0.0"

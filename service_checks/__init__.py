"""Headless-browser page checks for monitored services, with webhook alerts."""

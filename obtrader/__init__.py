"""Order block futures trading bot."""

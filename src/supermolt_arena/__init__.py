"""SuperMolt Arena core - wallet monitoring, epoch lifecycle and reward payouts."""

__version__ = "0.1.0"

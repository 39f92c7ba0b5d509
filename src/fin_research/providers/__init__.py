"""Financial data provider adapters and capability registry."""

"""Client-side mirror and transaction driver for a TimeFlow streaming/staking vault."""

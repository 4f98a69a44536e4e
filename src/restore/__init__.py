"""Site restore: segment reader, restore stages and restore actions."""

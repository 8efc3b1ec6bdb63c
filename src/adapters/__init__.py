"""Adapters that connect the chatstore core to storage engines and output formats."""

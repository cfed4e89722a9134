"""Live monitoring: filesystem watching, the monitor loop, and rendering."""

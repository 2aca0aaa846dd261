"""Root marker for pytest: its rootdir insertion puts this directory, and so the flat modules, on sys.path."""

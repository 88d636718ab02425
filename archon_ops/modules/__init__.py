"""Operation modules. Each exposes main(args) in its index.py."""

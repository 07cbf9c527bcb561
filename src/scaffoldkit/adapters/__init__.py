"""Adapters binding ports to git, HTTP and the filesystem."""

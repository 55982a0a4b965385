"""Client helpers for the KeyWarden command-line tool."""

#!/usr/bin/env python3
"""
FocusBlock - Block distracting websites and applications for a set duration.

Websites are blocked through a managed section of the hosts file, with a local
page served to blocked browsers, and (on macOS, as root) a packet filter
anchor on top. Applications are terminated when they start.

Usage:
    python main.py block -d reddit.com youtube.com -t 45m
    python main.py block -f ~/focus.txt -t 2h --daemon
    python main.py unblock
    python main.py status
"""

from focusblock.utils.daemon import main

if __name__ == "__main__":
    main()

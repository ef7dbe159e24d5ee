#!/usr/bin/env python3
import os
import re
import logging

from focusblock.core.models import BlockRuleSet
from focusblock.utils.constants import BLOCK_LIST_FILE

APP_PREFIX = "app:"
ALLOW_PREFIX = "allow:"
ENTIRE_INTERNET = "*"


def parse_block_list(lines):
    """Turn block list lines into a BlockRuleSet.

    Bare lines are domains, `app:<identifier>` lines are applications,
    `allow:<domain>` lines are exceptions and a `*` line blocks everything
    that is not allowed. Text after `#` is ignored.
    """
    domains, apps, allowed = [], [], []
    entire_internet = False
    for line in lines:
        entry = re.split(r"\s*#", line, maxsplit=1)[0].strip()
        if not entry:
            continue
        if entry == ENTIRE_INTERNET:
            entire_internet = True
        elif entry.lower().startswith(APP_PREFIX):
            app = entry[len(APP_PREFIX):].strip()
            if app:
                apps.append(app)
        elif entry.lower().startswith(ALLOW_PREFIX):
            allowed.append(entry[len(ALLOW_PREFIX):])
        else:
            domains.append(entry)
    return BlockRuleSet.create(domains, apps, entire_internet, allowed)


class BlockListHandler:
    def __init__(self, block_list_path=BLOCK_LIST_FILE):
        self.block_list_path = str(block_list_path)

    def _ensure_block_list_directory(self):
        """Create block list directory if it doesn't exist"""
        block_list_dir = os.path.dirname(self.block_list_path)
        if block_list_dir and not os.path.exists(block_list_dir):
            os.makedirs(block_list_dir, exist_ok=True)
            logging.info(f"Created block list directory: {block_list_dir}")

    def _read_lines(self):
        if not os.path.exists(self.block_list_path):
            self.create_default_block_list()
        with open(self.block_list_path, 'r', encoding="utf-8") as f:
            return f.read().splitlines()

    def read_rule_set(self) -> BlockRuleSet:
        """Read the block list into a rule set"""
        logging.info(f"Reading block list from {self.block_list_path}")
        rules = parse_block_list(self._read_lines())
        logging.info(
            f"Found {len(rules.website_domains)} websites and "
            f"{len(rules.application_identifiers)} applications to block"
        )
        return rules

    def read_entries(self):
        """Raw entries in file order, without comments"""
        entries = []
        for line in self._read_lines():
            entry = re.split(r"\s*#", line, maxsplit=1)[0].strip()
            if entry:
                entries.append(entry)
        return entries

    def create_default_block_list(self):
        """Create a default block list with common distracting websites"""
        default_sites = [
            "# Default block list - Add or remove entries as needed",
            "# One domain per line, without 'www' or 'https://'",
            "# app:<bundle id or executable path> blocks an application",
            "# allow:<domain> keeps a domain reachable, '*' blocks everything else",
            "facebook.com",
            "twitter.com",
            "instagram.com",
            "reddit.com",
            "youtube.com",
            "netflix.com",
            "tiktok.com",
            "pinterest.com",
            "twitch.tv",
            "discord.com",
        ]
        self._ensure_block_list_directory()
        with open(self.block_list_path, 'w', encoding="utf-8") as f:
            f.write('\n'.join(default_sites) + '\n')
        logging.info(f"Created default block list at {self.block_list_path}")

    def add_to_block_list(self, entries):
        """Add entries to the block list; returns how many were new"""
        if not entries:
            return 0

        current = set(self.read_entries())
        new_entries = [e for e in dict.fromkeys(e.strip() for e in entries) if e and e not in current]
        if not new_entries:
            logging.info("No new entries to add to block list")
            return 0

        with open(self.block_list_path, 'r+', encoding="utf-8") as f:
            content = f.read()
            if content and not content.endswith('\n'):
                f.write('\n')
            for entry in new_entries:
                f.write(f"{entry}\n")

        logging.info(f"Added {len(new_entries)} entries to block list")
        return len(new_entries)

    def remove_from_block_list(self, entries):
        """Remove entries from the block list, keeping comments; returns how many lines went"""
        if not entries or not os.path.exists(self.block_list_path):
            return 0

        to_remove = {e.strip() for e in entries}
        with open(self.block_list_path, 'r', encoding="utf-8") as f:
            lines = f.readlines()

        kept = []
        for line in lines:
            entry = re.split(r"\s*#", line, maxsplit=1)[0].strip()
            if entry and entry in to_remove:
                continue
            kept.append(line)

        removed = len(lines) - len(kept)
        if removed:
            with open(self.block_list_path, 'w', encoding="utf-8") as f:
                f.writelines(kept)
            logging.info(f"Removed {removed} entries from block list")
        return removed

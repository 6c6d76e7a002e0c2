"""
Turn a user supplied target string into an ordered list of VM names.
"""

import logging
import os
import re
from collections import Counter
from typing import List, Optional

logger = logging.getLogger(__name__)

ALL_KEYWORD = 'all'
TOKEN_SEPARATORS = re.compile(r'[\r\n,;]+')


def split_targets(text: str) -> List[str]:
    """Split on newline, comma or semicolon; trim and drop empty tokens."""
    return [token.strip() for token in TOKEN_SEPARATORS.split(text) if token.strip()]


class TargetResolver:
    """Handles VM target parsing.

    Accepted forms:
      ''  / 'all'            every VM in the inventory, by ID where names clash
      path/to/file.txt       names listed in the file
      web01,db01;cache01     inline list
    Duplicates are kept, order is preserved.
    """

    def __init__(self, client):
        self.client = client

    def resolve(self, raw: Optional[str]) -> List[str]:
        selection = (raw or '').strip()

        if not selection or selection.lower() == ALL_KEYWORD:
            vms = self.client.list_vms()
            name_counts = Counter(vm.name for vm in vms)
            # A name shared by several VMs would always resolve to the first; use the ID instead
            names = [vm.name if name_counts[vm.name] == 1 else vm.vmid for vm in vms]
            logger.debug("Target 'all' resolved to %d VMs", len(names))
            return names

        if os.path.isfile(selection) and os.access(selection, os.R_OK):
            with open(selection, encoding='utf-8') as handle:
                names = split_targets(handle.read())
            logger.debug("Read %d targets from %s", len(names), selection)
            return names

        return split_targets(selection)

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Editor protocol request handlers."""

from codedb.server.text_document import TextDocument

__all__ = ["TextDocument"]

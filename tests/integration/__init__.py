# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Integration tests driving the language server end to end."""

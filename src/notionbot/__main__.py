"""Allow `python -m notionbot` to launch the bot."""

import asyncio
import sys

from notionbot.main import main

sys.exit(asyncio.run(main()))

"""Test helpers for image-builder tools."""

from image_builder.command import Command, run

IMAGE_BUILDER_BIN = "image-builder"


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command([IMAGE_BUILDER_BIN] + args, env=env))

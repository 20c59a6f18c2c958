"""Run the image-builder command line tool."""

from image_builder.tool.image_builder import main

main()

"""
Command line entry point: separate a file into <name>_Instrumental.wav and <name>_Vocals.wav.
"""

import argparse
import asyncio
import logging
import os
import sys

from tqdm import tqdm

from .exceptions import SeparationError
from .progress import JobState
from .separator import INSTRUMENTAL_STEM, VOCALS_STEM, Separator


class ProgressBar:
    """Render progress events on a tqdm bar."""

    def __init__(self, disable=False):
        self.bar = tqdm(total=100, unit="%", bar_format="{l_bar}{bar}| {n:.0f}/{total:.0f}%", disable=disable)

    def __call__(self, event):
        self.bar.set_description(event.message[:40])
        self.bar.update(event.percent - self.bar.n)

    def close(self):
        self.bar.close()


def build_parser():
    parser = argparse.ArgumentParser(
        prog="mdx-split",
        description="Separate vocals from instrumental with the MDX-Net model.",
    )
    parser.add_argument("input", nargs="?", help="Audio or video file to separate")
    parser.add_argument("-o", "--output-dir", default=None, help="Directory for the stems (default: current directory)")
    parser.add_argument("--model-dir", default=None, help="Model cache directory")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Overrides the log_level setting")
    parser.add_argument("--vocals-name", default=None, help="File name for the vocal stem")
    parser.add_argument("--instrumental-name", default=None, help="File name for the instrumental stem")
    parser.add_argument("--download-only", action="store_true", help="Download and cache the model, then exit")
    parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    return parser


async def run(args, separator):
    bar = ProgressBar(disable=args.no_progress)
    try:
        if args.download_only:
            await separator.load_model(bar)
            return 0

        job = separator.create_job(args.input, bar)
        try:
            result = await job.run()
        except asyncio.CancelledError:
            job.cancel()
            raise
    finally:
        bar.close()

    if result.state is JobState.CANCELLED:
        return 130
    if result.state is JobState.FAILED:
        separator.logger.error(f"{type(result.error).__name__}: {result.error}")
        return 1

    custom_output_names = {}
    if args.vocals_name:
        custom_output_names[VOCALS_STEM] = args.vocals_name
    if args.instrumental_name:
        custom_output_names[INSTRUMENTAL_STEM] = args.instrumental_name

    output_dir = args.output_dir or os.getcwd()
    base_name = os.path.splitext(os.path.basename(args.input))[0]
    for path in separator.save_outputs(result, output_dir, base_name, custom_output_names):
        print(path)
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.input and not args.download_only:
        parser.error("an input file is required unless --download-only is given")

    separator = Separator(
        log_level=getattr(logging, args.log_level) if args.log_level else None,
        model_file_dir=args.model_dir,
        config_path=args.config,
    )
    try:
        return asyncio.run(run(args, separator))
    except KeyboardInterrupt:
        return 130
    except SeparationError as e:
        # load failures from --download-only
        separator.logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""
whispercli - transcribe a media file or live microphone input to text.

Usage:
    whispercli recording.mp3
    whispercli --model small --language en interview.mp4
    whispercli                       # record from microphone 0, press space to stop
    whispercli --streaming -i 1      # transcribe while recording
"""

import argparse
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .audio.capture import query_input_devices
from .audio.keyboard import normalize_key
from .cancellation import CancellationToken
from .engines import get_all_models
from .errors import AlreadyRunning, ConfigurationError, DeviceError, WhisperCliError
from .instance_guard import InstanceGuard, NullGuard
from .logger import WhisperCliLogger, get_logger
from .output import copy_to_clipboard, open_file
from .pipeline import PipelineCoordinator, PipelineOptions
from .utils import ConfigManager

logger = get_logger('cli')

# CLI argument -> config keys it overrides
CLI_OVERRIDES = {
    'model': ('model_options', 'model'),
    'language': ('model_options', 'language'),
    'device': ('model_options', 'device'),
    'compute_type': ('model_options', 'compute_type'),
    'microphone_index': ('recording_options', 'microphone_index'),
    'stop_key': ('recording_options', 'stop_key'),
    'streaming': ('recording_options', 'streaming'),
    'output_dir': ('output_options', 'output_dir'),
    'open_results': ('output_options', 'open_results'),
    'copy_to_clipboard': ('output_options', 'copy_to_clipboard'),
    'delay_seconds': ('output_options', 'delay_seconds'),
    'lockfile': ('misc', 'use_lockfile'),
    'verbose': ('misc', 'verbose'),
}


def build_parser():
    parser = argparse.ArgumentParser(
        prog='whispercli',
        description="Transcribe a media file, or live microphone input, to text with Whisper.",
    )
    parser.add_argument(
        "input", nargs='?', default=None,
        help="Audio or video file to transcribe. Omit to record from the microphone."
    )
    parser.add_argument("-m", "--model", help="Whisper model id (default: large-v3-turbo)")
    parser.add_argument("-l", "--language", help="Language code, or 'auto' to detect (default: auto)")
    parser.add_argument(
        "-i", "--microphone-index", type=int,
        help="Input device index, see --list-devices (default: 0)"
    )
    parser.add_argument("-s", "--stop-key", help="Key that stops recording (default: space)")
    parser.add_argument(
        "-o", "--open-results", action=argparse.BooleanOptionalAction, default=None,
        help="Open the transcript when done"
    )
    parser.add_argument(
        "-c", "--copy-to-clipboard", action=argparse.BooleanOptionalAction, default=None,
        help="Copy the transcript to the clipboard (default: on)"
    )
    parser.add_argument(
        "-d", "--delay-seconds", type=float,
        help="Seconds to wait before exiting (default: 10)"
    )
    parser.add_argument(
        "--lockfile", action=argparse.BooleanOptionalAction, default=None,
        help="Refuse to start while another instance runs (default: on)"
    )
    parser.add_argument("--streaming", action=argparse.BooleanOptionalAction, default=None,
                        help="Transcribe speech while recording continues")
    parser.add_argument("--output-dir", help="Directory for transcripts")
    parser.add_argument("--device", choices=["auto", "cuda", "cpu"], help="Compute device")
    parser.add_argument("--compute-type", help="CTranslate2 compute type (default: per device)")
    parser.add_argument("--list-devices", action="store_true", help="List input devices and exit")
    parser.add_argument("-v", "--verbose", action="store_true", default=None, help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_cli_overrides(args) -> None:
    """Write explicitly given CLI arguments over the loaded config."""
    for arg_name, keys in CLI_OVERRIDES.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            ConfigManager.set_config_value(value, *keys)


def validate_settings(input_path) -> None:
    """
    Raises:
        ConfigurationError: If any setting would make the run meaningless
    """
    delay = ConfigManager.get_config_value('output_options', 'delay_seconds')
    if delay is not None and delay < 0:
        raise ConfigurationError(f"--delay-seconds must be >= 0, got {delay}")

    mic_index = ConfigManager.get_config_value('recording_options', 'microphone_index')
    if isinstance(mic_index, bool) or not isinstance(mic_index, int):
        raise ConfigurationError(f"Microphone index must be an integer, got {mic_index!r}")

    try:
        normalize_key(ConfigManager.get_config_value('recording_options', 'stop_key'))
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    model = ConfigManager.get_config_value('model_options', 'model')
    known = [m.id for m in get_all_models()]
    if model not in known and not Path(model).is_dir():
        raise ConfigurationError(f"Unknown model '{model}'. Available: {', '.join(known)}")

    if input_path is not None and not Path(input_path).is_file():
        raise ConfigurationError(f"Input file not found: {input_path}")


def list_devices() -> int:
    try:
        devices = query_input_devices()
    except DeviceError as e:
        logger.error(str(e))
        return e.exit_code
    if not devices:
        print("No audio input devices found.")
        return 0
    for i, dev in enumerate(devices):
        print(f"{i}: {dev['name']} ({dev['max_input_channels']} ch, {int(dev['default_samplerate'])} Hz)")
    return 0


def install_signal_handlers(token: CancellationToken):
    """First Ctrl+C cancels cooperatively, a second one interrupts hard."""
    def handler(signum, frame):
        if not token.cancel(f"signal {signum}"):
            raise KeyboardInterrupt
        logger.info("Stopping... (press Ctrl+C again to abort)")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except (ValueError, OSError):
            # Not on the main thread, or unsupported on this platform
            pass
    return previous


def restore_signal_handlers(previous) -> None:
    for sig, old_handler in previous.items():
        signal.signal(sig, old_handler)


def wait_before_exit(seconds, token: CancellationToken) -> None:
    if not seconds or token.is_cancelled:
        return
    logger.info(f"Exiting in {seconds:g} seconds. Press Ctrl+C to exit now.")
    token.wait(seconds)


def present(result) -> None:
    if result.output_path is None:
        return
    text = result.text.strip()
    if text and ConfigManager.get_config_value('output_options', 'copy_to_clipboard'):
        copy_to_clipboard(text)
    if ConfigManager.get_config_value('output_options', 'open_results'):
        open_file(result.output_path)


def run(args, token: CancellationToken) -> int:
    options = PipelineOptions.from_config(args.input)
    use_lockfile = ConfigManager.get_config_value('misc', 'use_lockfile')
    guard = InstanceGuard() if use_lockfile else NullGuard()

    try:
        with guard:
            result = PipelineCoordinator(options, cancellation_token=token).run()
    except AlreadyRunning as e:
        logger.info(f"{e}. Exiting.")
        return e.exit_code

    present(result)
    wait_before_exit(ConfigManager.get_config_value('output_options', 'delay_seconds'), token)
    return result.exit_code


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    ConfigManager.reset()
    ConfigManager.initialize()
    apply_cli_overrides(args)
    WhisperCliLogger.configure(verbose=bool(ConfigManager.get_config_value('misc', 'verbose')))

    if args.list_devices:
        return list_devices()

    try:
        validate_settings(args.input)
    except ConfigurationError as e:
        logger.error(str(e))
        return e.exit_code

    token = CancellationToken()
    previous = install_signal_handlers(token)
    try:
        return run(args, token)
    except WhisperCliError as e:
        logger.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Aborted")
        return 130
    finally:
        restore_signal_handlers(previous)


if __name__ == "__main__":
    sys.exit(main())

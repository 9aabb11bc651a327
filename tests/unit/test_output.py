"""
Tests for clipboard/open integration and platform helpers.
"""

import pyperclip

from whispercli import compat, output


class TestCopyToClipboard:
    """Tests for copy_to_clipboard retries and fallback."""

    def test_verified_copy(self, monkeypatch):
        """A copy that reads back correctly succeeds first time."""
        clipboard = {}
        monkeypatch.setattr(pyperclip, "copy", lambda text: clipboard.update(text=text))
        monkeypatch.setattr(pyperclip, "paste", lambda: clipboard.get("text"))

        assert output.copy_to_clipboard("hello") is True

    def test_falls_back_when_pyperclip_fails(self, monkeypatch):
        """Platform command is used when pyperclip can't copy."""
        def broken(text):
            raise pyperclip.PyperclipException("no clipboard mechanism")

        fallback = []
        monkeypatch.setattr(pyperclip, "copy", broken)
        monkeypatch.setattr(output.time, "sleep", lambda s: None)
        monkeypatch.setattr(compat, "clipboard_copy_fallback", lambda text: fallback.append(text) or True)

        assert output.copy_to_clipboard("hello", retries=2) is True
        assert fallback == ["hello"]

    def test_total_failure_is_not_fatal(self, monkeypatch):
        """If nothing works the copy just reports False."""
        def broken(text):
            raise pyperclip.PyperclipException("no clipboard mechanism")

        monkeypatch.setattr(pyperclip, "copy", broken)
        monkeypatch.setattr(output.time, "sleep", lambda s: None)
        monkeypatch.setattr(compat, "clipboard_copy_fallback", lambda text: False)

        assert output.copy_to_clipboard("hello") is False


class TestOpenFile:
    """Tests for open_file."""

    def test_open_failure_logged(self, monkeypatch, temp_dir):
        """A missing opener is a warning, not a crash."""
        def broken(path):
            raise OSError("xdg-open not found")

        monkeypatch.setattr(compat, "open_with_default_app", broken)
        assert output.open_file(temp_dir / "out.txt") is False


class TestCompat:
    """Tests for platform helpers."""

    def test_cache_dir_override(self, monkeypatch, temp_dir):
        """WHISPERCLI_CACHE_DIR relocates the cache."""
        monkeypatch.setenv("WHISPERCLI_CACHE_DIR", str(temp_dir))
        assert compat.get_cache_dir() == temp_dir

    def test_ffmpeg_override(self, monkeypatch, temp_dir):
        """WHISPERCLI_FFMPEG points at a specific binary."""
        binary = temp_dir / "ffmpeg"
        binary.write_text("")
        monkeypatch.setenv("WHISPERCLI_FFMPEG", str(binary))
        assert compat.find_ffmpeg() == str(binary)

    def test_compute_type_per_device(self):
        """float16 on CUDA, int8 on CPU."""
        assert compat.default_compute_type("cuda") == "float16"
        assert compat.default_compute_type("cpu") == "int8"

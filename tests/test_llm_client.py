"""Unit tests for the vision client with mocked Gemini responses."""

from io import BytesIO
from unittest.mock import Mock, PropertyMock, patch

import PIL.Image
import pytest

from screenpilot.core.configs import LLMConfig
from screenpilot.core.llm_client import PROMPTS, VisionClient, get_prompt


def make_chunk(text=None, error=None):
    chunk = Mock()
    if error is not None:
        type(chunk).text = PropertyMock(side_effect=error)
    else:
        chunk.text = text
    return chunk


class TestVisionClient:
    """Test vision client functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = LLMConfig(
            model="gemini-1.5-flash-latest",
            api_key_env="GEMINI_API_KEY",
            max_tokens_high=300,
            max_tokens=150,
            temperature=0.3,
        )

    def _image_bytes(self) -> bytes:
        buf = BytesIO()
        PIL.Image.new("RGB", (32, 32), color="white").save(buf, format="JPEG")
        return buf.getvalue()

    @patch.dict('os.environ', {'GEMINI_API_KEY': 'test_key'})
    @patch('google.generativeai.configure')
    @patch('google.generativeai.GenerativeModel')
    def test_client_initialization_success(self, mock_model, mock_configure):
        """Test successful client initialization."""
        mock_model_instance = Mock()
        mock_model.return_value = mock_model_instance

        client = VisionClient(self.config)

        mock_configure.assert_called_once_with(api_key='test_key')
        mock_model.assert_called_once_with('gemini-1.5-flash-latest')
        assert client._client == mock_model_instance

    @patch.dict('os.environ', {}, clear=True)
    @patch('google.generativeai.configure')
    @patch('google.generativeai.GenerativeModel')
    def test_explicit_key_wins(self, mock_model, mock_configure):
        VisionClient(self.config, api_key="explicit")
        mock_configure.assert_called_once_with(api_key='explicit')

    @patch.dict('os.environ', {}, clear=True)
    def test_client_initialization_missing_key(self):
        """Test client initialization failure with missing API key."""
        with pytest.raises(ValueError, match="GEMINI_API_KEY environment variable not set"):
            VisionClient(self.config)

    @patch.dict('os.environ', {'GEMINI_API_KEY': 'test_key'})
    @patch('google.generativeai.configure')
    @patch('google.generativeai.GenerativeModel')
    def test_stream_completion_yields_chunk_text(self, mock_model_class, mock_configure):
        mock_model = Mock()
        mock_model.generate_content.return_value = iter([
            make_chunk("SUMMARY: Editor "),
            make_chunk(""),
            make_chunk(error=ValueError("no text parts")),
            make_chunk("open\n"),
        ])
        mock_model_class.return_value = mock_model

        client = VisionClient(self.config)
        tokens = list(client.stream_completion(self._image_bytes(), get_prompt("high"), "high"))

        assert tokens == ["SUMMARY: Editor ", "open\n"]
        args, kwargs = mock_model.generate_content.call_args
        assert args[0][0] == PROMPTS["high"]
        assert isinstance(args[0][1], PIL.Image.Image)
        assert kwargs["stream"] is True
        assert kwargs["generation_config"] == {"max_output_tokens": 300, "temperature": 0.3}

    @patch.dict('os.environ', {'GEMINI_API_KEY': 'test_key'})
    @patch('google.generativeai.configure')
    @patch('google.generativeai.GenerativeModel')
    def test_generation_config_by_priority(self, mock_model_class, mock_configure):
        client = VisionClient(self.config)
        assert client.generation_config("high")["max_output_tokens"] == 300
        assert client.generation_config("medium")["max_output_tokens"] == 150
        assert client.generation_config("low")["max_output_tokens"] == 150

    @patch.dict('os.environ', {'GEMINI_API_KEY': 'test_key'})
    @patch('google.generativeai.configure')
    @patch('google.generativeai.GenerativeModel')
    def test_stream_errors_propagate(self, mock_model_class, mock_configure):
        mock_model = Mock()
        mock_model.generate_content.side_effect = RuntimeError("quota exceeded")
        mock_model_class.return_value = mock_model

        client = VisionClient(self.config)
        with pytest.raises(RuntimeError, match="quota exceeded"):
            list(client.stream_completion(self._image_bytes(), get_prompt("low"), "low"))


@pytest.mark.parametrize("priority", ["high", "medium", "low"])
def test_prompts_fix_the_response_format(priority):
    prompt = get_prompt(priority)
    assert "SUMMARY:" in prompt
    assert "ERRORS:" in prompt


def test_unknown_priority_falls_back_to_low():
    assert get_prompt("urgent") == PROMPTS["low"]

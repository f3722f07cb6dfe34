"""Translation backends, prompts and the async translation client."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import httpx

from .errors import MalformedResponseError, PaperBurnerError, ProviderError
from .keys import mask_key
from .ocr import raise_for_status

if TYPE_CHECKING:
    from .config import Settings

log = logging.getLogger(__name__)

NO_TRANSLATION = "none"
CUSTOM_MODEL = "custom"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_S = 300.0

CONTENT_PLACEHOLDER = "${content}"
LANGUAGE_PLACEHOLDER = "${targetLangName}"


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TranslationPrompts:
    system_prompt: str
    user_prompt_template: str


_REQUIREMENTS_EN = (
    "Requirements:\n\n"
    "1. Keep all Markdown syntax elements unchanged (e.g., #headings, *italics*, "
    "**bold**, [links](), ![images]()).\n"
    "2. Translate academic/professional terms accurately.{term_hint}\n"
    "3. Maintain the original paragraph structure and formatting.\n"
    "4. Translate only the content; do not add extra explanations.\n"
    "5. For display math formulas, use:\n$$\n...\n$$\n\n"
    "Document Content:\n\n${{content}}"
)

_PREDEFINED_PROMPTS: dict[str, TranslationPrompts] = {
    "chinese": TranslationPrompts(
        "你是一个专业的文档翻译助手，擅长将文本精确翻译为简体中文，同时保留原始的 Markdown 格式。",
        "请将以下内容翻译为 **简体中文**。\n要求:\n\n"
        "1. 保持所有 Markdown 语法元素不变（如 # 标题、 *斜体*、 **粗体**、 [链接]()、 ![图片]() 等）。\n"
        "2. 学术/专业术语应准确翻译。\n"
        "3. 保持原文的段落结构和格式。\n"
        "4. 仅输出翻译后的内容，不要包含任何额外的解释或注释。\n"
        "5. 对于行间公式，使用 $$...$$ 标记。\n\n"
        "文档内容:\n\n${content}",
    ),
    "japanese": TranslationPrompts(
        "あなたはプロの文書翻訳アシスタントで、テキストを正確に日本語に翻訳し、元の Markdown 形式を維持することに長けています。",
        "以下の内容を **日本語** に翻訳してください。\n要件:\n\n"
        "1. すべての Markdown 構文要素（例: # 見出し、 *イタリック*、 **太字**、 [リンク]()、 ![画像]() など）は変更しないでください。\n"
        "2. 学術/専門用語は正確に翻訳してください。\n"
        "3. 元の段落構造と書式を維持してください。\n"
        "4. 翻訳された内容のみを出力し、余分な説明や注釈は含めないでください。\n"
        "5. 表示数式には $$...$$ を使用してください。\n\n"
        "ドキュメント内容:\n\n${content}",
    ),
    "korean": TranslationPrompts(
        "당신은 전문 문서 번역 어시스턴트로, 텍스트를 정확하게 한국어로 번역하면서 원본 Markdown 형식을 유지하는 데 능숙합니다.",
        "다음 내용을 **한국어**로 번역해 주세요.\n요구사항:\n\n"
        "1. 모든 Markdown 구문 요소(예: # 제목, *기울임*, **굵게**, [링크](), ![이미지]() 등)를 변경하지 마세요.\n"
        "2. 학술/전문 용어를 정확하게 번역하세요.\n"
        "3. 원본의 단락 구조와 형식을 유지하세요.\n"
        "4. 번역된 내용만 출력하고, 추가 설명이나 주석은 포함하지 마세요.\n"
        "5. 수식 표시에는 $$...$$ 를 사용하세요.\n\n"
        "문서 내용:\n\n${content}",
    ),
    "french": TranslationPrompts(
        "Vous êtes un assistant de traduction de documents professionnel, expert dans la "
        "traduction précise de textes en français tout en préservant le format Markdown original.",
        "Veuillez traduire le contenu suivant en **Français**.\nExigences:\n\n"
        "1. Conserver tous les éléments de syntaxe Markdown inchangés (par exemple, # titres, "
        "*italique*, **gras**, [liens](), ![images]()).\n"
        "2. Traduire avec précision les termes académiques/professionnels.\n"
        "3. Maintenir la structure et le formatage des paragraphes d'origine.\n"
        "4. Produire uniquement le contenu traduit, sans explications ni annotations supplémentaires.\n"
        "5. Pour les formules mathématiques, utiliser $$...$$.\n\n"
        "Contenu du document:\n\n${content}",
    ),
    "english": TranslationPrompts(
        "You are a professional document translation assistant, skilled at accurately "
        "translating text into English while preserving the original document format.",
        "Please translate the following content into **English**. \n"
        + _REQUIREMENTS_EN.format(term_hint=""),
    ),
}

LANGUAGE_NAMES = {
    "chinese": "中文",
    "english": "英文",
    "japanese": "日文",
    "korean": "韩文",
    "french": "法文",
}


def get_predefined_prompts(
    target_language: str, custom_target_language: str = ""
) -> TranslationPrompts:
    """Built-in prompts for *target_language*; other languages get a generic pair."""
    lang = target_language.lower()
    if lang in _PREDEFINED_PROMPTS:
        return _PREDEFINED_PROMPTS[lang]
    display = target_language
    if lang == "custom":
        display = custom_target_language.strip() or "English"
    return TranslationPrompts(
        "You are a professional document translation assistant, skilled at accurately "
        "translating text into the target language while preserving the original document format.",
        f"Please translate the following content into **{display}**. \n"
        + _REQUIREMENTS_EN.format(
            term_hint=(
                " If necessary, keep the original term in parentheses if unsure "
                f"about the translation in {display}."
            )
        ),
    )


def get_final_translation_prompts(
    target_language: str,
    custom_target_language: str = "",
    use_custom_prompts: bool = False,
    custom_system_prompt: str = "",
    custom_user_prompt_template: str = "",
) -> TranslationPrompts:
    """Custom prompts win only when enabled and both are non-empty."""
    if use_custom_prompts and custom_system_prompt.strip() and custom_user_prompt_template.strip():
        return TranslationPrompts(
            custom_system_prompt.strip(), custom_user_prompt_template.strip()
        )
    return get_predefined_prompts(target_language, custom_target_language)


def fill_template(template: str, content: str, target_language: str) -> str:
    return template.replace(CONTENT_PLACEHOLDER, content).replace(
        LANGUAGE_PLACEHOLDER, target_language
    )


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


def _dig(data: Any, *path: Any) -> Any:
    for step in path:
        try:
            data = data[step]
        except (KeyError, IndexError, TypeError):
            return None
    return data


@dataclass
class TranslationBackend:
    """Request/response shape of one translation provider.

    ``request_format`` is one of ``openai``, ``anthropic``, ``gemini`` or
    ``dashscope``; it decides authentication, body layout and where the
    translated text sits in the response.
    """

    name: str
    endpoint: str
    request_format: str
    model_id: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra_body: dict[str, Any] = field(default_factory=dict)

    def url(self, key: str) -> str:
        if self.request_format == "gemini":
            return self.endpoint.split("?", 1)[0]
        return self.endpoint

    def params(self, key: str) -> dict[str, str]:
        return {"key": key} if self.request_format == "gemini" else {}

    def headers(self, key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.request_format == "anthropic":
            headers["x-api-key"] = key
            headers["anthropic-version"] = ANTHROPIC_VERSION
        elif self.request_format != "gemini":
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def build_request(
        self,
        content: str,
        target_language: str,
        system_prompt: Optional[str] = None,
        user_prompt_template: Optional[str] = None,
    ) -> dict[str, Any]:
        system = system_prompt or (
            "You are a professional translator. "
            f"Translate the following content to {target_language}."
        )
        user = (
            fill_template(user_prompt_template, content, target_language)
            if user_prompt_template
            else content
        )

        if self.request_format == "gemini":
            body: dict[str, Any] = {"contents": [{"parts": [{"text": f"{system}\n\n{user}"}]}]}
        elif self.request_format == "anthropic":
            body = {
                "model": self.model_id,
                "max_tokens": self.max_tokens or 8000,
                "system": system,
                "messages": [{"role": "user", "content": user}],
            }
        else:
            messages = [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ]
            if self.request_format == "dashscope":
                body = {"model": self.model_id, "input": {"messages": messages}}
            else:
                body = {"model": self.model_id, "messages": messages}
                if self.temperature is not None:
                    body["temperature"] = self.temperature
                if self.max_tokens is not None:
                    body["max_tokens"] = self.max_tokens
        body.update(self.extra_body)
        return body

    def extract_response(self, payload: Any) -> Optional[str]:
        if self.request_format == "gemini":
            text = _dig(payload, "candidates", 0, "content", "parts", 0, "text")
        elif self.request_format == "anthropic":
            text = _dig(payload, "content", 0, "text")
        elif self.request_format == "dashscope":
            text = _dig(payload, "output", "text")
        else:
            text = _dig(payload, "choices", 0, "message", "content")
        return text if isinstance(text, str) else None


PREDEFINED_BACKENDS: dict[str, TranslationBackend] = {
    "mistral": TranslationBackend(
        "mistral",
        "https://api.mistral.ai/v1/chat/completions",
        "openai",
        "mistral-large-latest",
    ),
    "deepseek": TranslationBackend(
        "deepseek",
        "https://api.deepseek.com/v1/chat/completions",
        "openai",
        "deepseek-chat",
    ),
    "gemini": TranslationBackend(
        "gemini",
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash-exp:generateContent",
        "gemini",
    ),
    "claude": TranslationBackend(
        "claude",
        "https://api.anthropic.com/v1/messages",
        "anthropic",
        "claude-3-5-sonnet-20241022",
        max_tokens=8000,
    ),
    "tongyi-deepseek-v3": TranslationBackend(
        "tongyi-deepseek-v3",
        "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation",
        "dashscope",
        "deepseek-v3",
    ),
    "volcano-deepseek-v3": TranslationBackend(
        "volcano-deepseek-v3",
        "https://ark.cn-beijing.volces.com/api/v3/chat/completions",
        "openai",
        "ep-20241230140207-8xqzr",
    ),
    "chutes-deepseek-v3": TranslationBackend(
        "chutes-deepseek-v3",
        "https://llm.chutes.ai/v1/chat/completions",
        "openai",
        "deepseek-ai/DeepSeek-V3-0324",
        temperature=0,
        max_tokens=10000,
        extra_body={"stream": False},
    ),
}

CUSTOM_REQUEST_FORMATS = ("openai", "anthropic", "gemini")
TRANSLATION_MODELS = (NO_TRANSLATION, *PREDEFINED_BACKENDS, CUSTOM_MODEL)


def build_backend(model: str, settings: Optional["Settings"] = None) -> TranslationBackend:
    """Resolve a model name (or ``custom`` plus settings) to a backend."""
    if model == CUSTOM_MODEL:
        if settings is None or not settings.custom_api_endpoint or not settings.custom_model_id:
            raise ValueError("custom translation model needs an endpoint and a model id")
        if settings.custom_request_format not in CUSTOM_REQUEST_FORMATS:
            raise ValueError(
                f"unsupported custom request format: {settings.custom_request_format}"
            )
        return TranslationBackend(
            "custom",
            settings.custom_api_endpoint,
            settings.custom_request_format,
            settings.custom_model_id,
            temperature=settings.custom_temperature,
            max_tokens=settings.custom_max_tokens,
        )
    try:
        return PREDEFINED_BACKENDS[model]
    except KeyError:
        raise ValueError(f"unsupported translation model: {model}") from None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TranslationClient:
    """Sends one translation request per call through an ``httpx.AsyncClient``."""

    def __init__(
        self,
        backend: TranslationBackend,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.backend = backend
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "TranslationClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def translate(
        self,
        content: str,
        key: str,
        target_language: str,
        prompts: Optional[TranslationPrompts] = None,
    ) -> str:
        """Translate *content*; whitespace-only input is returned unchanged."""
        if not content.strip():
            return content
        body = self.backend.build_request(
            content,
            target_language,
            prompts.system_prompt if prompts else None,
            prompts.user_prompt_template if prompts else None,
        )
        try:
            response = await self._client.post(
                self.backend.url(key),
                params=self.backend.params(key),
                headers=self.backend.headers(key),
                json=body,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"translation request failed: {exc}", key=key) from exc
        raise_for_status(response, key, "translation")

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "translation response is not JSON", status=response.status_code, key=key
            ) from exc
        text = self.backend.extract_response(payload)
        if text is None or not text.strip():
            log.error(
                "translation: no text in %s response (key %s)",
                self.backend.name,
                mask_key(key),
            )
            raise MalformedResponseError(
                "could not extract translated text from response",
                status=response.status_code,
                key=key,
            )
        return text.strip()


# ---------------------------------------------------------------------------
# File names
# ---------------------------------------------------------------------------


@dataclass
class FileNameTranslation:
    original_name: str
    translated_name: str
    success: bool
    error: Optional[str] = None


_QUOTES_RE = re.compile(r"^[\"']|[\"']$")
_ILLEGAL_RE = re.compile(r'[/\\:*?"<>|]')


async def translate_file_name(
    client: Optional[TranslationClient],
    file_name: str,
    key: str,
    target_language: str,
) -> FileNameTranslation:
    """Translate a file stem for export names; falls back to the original."""
    stem = Path(file_name).stem if file_name.lower().endswith(".pdf") else file_name
    result = FileNameTranslation(stem, stem, success=False)
    if client is None:
        result.success = True
        return result

    language = LANGUAGE_NAMES.get(target_language, target_language)
    prompts = TranslationPrompts(
        f"You translate file names into {language}. Reply with the translated "
        "file name only: no explanation, no quotes, no special characters.",
        f"Translate this file name into {language}:\n\n${{content}}\n\nTranslated file name:",
    )
    try:
        translated = await client.translate(stem, key, target_language, prompts)
    except PaperBurnerError as exc:
        result.error = str(exc)
        log.warning("translate_file_name: %s kept as is: %s", stem, exc)
        return result

    cleaned = _ILLEGAL_RE.sub("", _QUOTES_RE.sub("", translated.strip())).strip()
    if cleaned:
        result.translated_name = cleaned
        result.success = True
    else:
        result.error = "empty translation"
    return result

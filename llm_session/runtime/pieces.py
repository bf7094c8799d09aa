"""
llm-session :: Token Pieces

Per-token raw bytes for HuggingFace tokenizer.json vocabularies.

tokenizer.decode([id]) runs the whole decoder pipeline on a single token,
which strips the word-boundary markers a streamed sequence depends on:
a Metaspace "▁world" comes back as "world", so the pieces of
"hello world" concatenate to "helloworld". Instead we map each vocabulary
entry to its surface bytes once, following the decoder declared in
tokenizer.json:

    metaspace   "▁" → " ", "<0xE2>" → byte 0xE2      (SentencePiece style)
    bytelevel   GPT-2 byte-to-unicode table inverted  (OpenAI style BPE)
    wordpiece   "##ing" → "ing", other tokens " " + token
    plain       " " + token                           (WordLevel, no decoder)

Concatenating pieces then gives back the encoded text, except for the
single leading space some vocabularies add at the start of a sequence;
space_prefix tells the caller to drop it when detokenizing a full
sequence.

INL - 2025
"""

import json
import string
from typing import Dict, List, Optional, Set

SPM_SPACE = "▁"


def bytes_to_unicode() -> Dict[int, str]:
    """GPT-2's reversible byte → printable character table."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, (chr(c) for c in cs)))


BYTE_DECODER = {c: b for b, c in bytes_to_unicode().items()}


def _components(node: Optional[dict]) -> List[dict]:
    """Flatten a tokenizer.json component (decoder, pre_tokenizer, normalizer)."""
    if not isinstance(node, dict):
        return []
    if node.get("type") == "Sequence":
        children = node.get("decoders") or node.get("pretokenizers") or node.get("normalizers") or []
        return [c for child in children for c in _components(child)]
    return [node]


def _find(node: Optional[dict], type_name: str) -> Optional[dict]:
    for component in _components(node):
        if component.get("type") == type_name:
            return component
    return None


def _is_byte_token(token: str) -> bool:
    """SentencePiece byte-fallback entries look like <0xE2>."""
    return (
        len(token) == 6 and token.startswith("<0x") and token.endswith(">")
        and all(c in string.hexdigits for c in token[3:5])
    )


def _metaspace_prepends(component: dict) -> bool:
    # tokenizers >= 0.19 writes prepend_scheme, older files add_prefix_space
    if "prepend_scheme" in component:
        return component["prepend_scheme"] != "never"
    return bool(component.get("add_prefix_space", True))


class PieceDecoder:
    """Token id → surface bytes, for one tokenizers.Tokenizer."""

    def __init__(
        self,
        tokenizer,
        kind: str = "plain",
        space_prefix: bool = False,
        replacement: str = SPM_SPACE,
        subword_prefix: str = "##",
        special_ids: Optional[Set[int]] = None,
    ):
        self.tokenizer = tokenizer
        self.kind = kind
        self.space_prefix = space_prefix
        self.replacement = replacement
        self.subword_prefix = subword_prefix
        self.special_ids = special_ids or set()
        self._cache: Dict[int, bytes] = {}

    @classmethod
    def from_file(cls, tokenizer, path: str) -> "PieceDecoder":
        with open(path, "r", encoding="utf-8") as f:
            content = json.load(f)
        return cls.from_content(tokenizer, content)

    @classmethod
    def from_content(cls, tokenizer, content: dict) -> "PieceDecoder":
        """Pick the piece convention from the tokenizer.json "decoder" entry."""
        decoder = content.get("decoder")
        pre_tokenizer = content.get("pre_tokenizer")
        special_ids = {
            t["id"] for t in content.get("added_tokens") or [] if t.get("special")
        }

        if _find(decoder, "ByteLevel") is not None:
            byte_level = _find(pre_tokenizer, "ByteLevel") or {}
            return cls(
                tokenizer, "bytelevel",
                space_prefix=bool(byte_level.get("add_prefix_space", False)),
                special_ids=special_ids,
            )

        metaspace = _find(decoder, "Metaspace")
        if metaspace is not None:
            return cls(
                tokenizer, "metaspace",
                space_prefix=_metaspace_prepends(metaspace),
                replacement=metaspace.get("replacement", SPM_SPACE),
                special_ids=special_ids,
            )

        replace = _find(decoder, "Replace")
        if replace is not None and (replace.get("pattern") or {}).get("String") == SPM_SPACE:
            # Llama style: Replace ▁, ByteFallback, Fuse, then Strip the first space
            strip = _find(decoder, "Strip")
            return cls(
                tokenizer, "metaspace",
                space_prefix=strip is not None and strip.get("start", 0) > 0,
                special_ids=special_ids,
            )

        wordpiece = _find(decoder, "WordPiece")
        if wordpiece is not None:
            return cls(
                tokenizer, "wordpiece", space_prefix=True,
                subword_prefix=wordpiece.get("prefix", "##"),
                special_ids=special_ids,
            )

        return cls(tokenizer, "plain", space_prefix=True, special_ids=special_ids)

    def piece(self, token_id: int) -> bytes:
        cached = self._cache.get(token_id)
        if cached is not None:
            return cached
        if token_id in self.special_ids:
            return b""
        token = self.tokenizer.id_to_token(token_id)
        data = b"" if token is None else self._surface(token)
        self._cache[token_id] = data
        return data

    def _surface(self, token: str) -> bytes:
        if self.kind == "bytelevel":
            out = bytearray()
            for ch in token:
                b = BYTE_DECODER.get(ch)
                if b is not None:
                    out.append(b)
                else:
                    out.extend(ch.encode("utf-8"))
            return bytes(out)

        if self.kind == "metaspace":
            if _is_byte_token(token):
                return bytes([int(token[3:5], 16)])
            return token.replace(self.replacement, " ").encode("utf-8")

        if self.kind == "wordpiece" and token.startswith(self.subword_prefix):
            return token[len(self.subword_prefix):].encode("utf-8")

        return (" " + token).encode("utf-8")

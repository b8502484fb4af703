from __future__ import annotations

import base64

from openai import OpenAI


def make_client(api_key: str, timeout_seconds: float | None = None) -> OpenAI:
    if timeout_seconds is None:
        return OpenAI(api_key=api_key)
    return OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)


def text_embedding(client: OpenAI, text: str, model: str, dimensions: int | None = None) -> list[float]:
    if dimensions:
        resp = client.embeddings.create(model=model, input=[text], dimensions=dimensions)
    else:
        resp = client.embeddings.create(model=model, input=[text])
    return resp.data[0].embedding


def describe_fashion_image(client: OpenAI, image_bytes: bytes, model: str) -> str:
    """Ask a vision model for a short searchable description of a garment photo."""
    b64 = base64.b64encode(image_bytes).decode("utf-8")

    prompt = (
        "You are a fashion catalog assistant.\n"
        "Describe the main clothing item in this photo in one or two sentences for product search.\n"
        "Mention its type, style, dominant colors, material and fit when visible.\n"
        "Return only the description."
    )

    completion = client.chat.completions.create(
        model=model,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
                ],
            },
        ],
        temperature=0.2,
    )
    return (completion.choices[0].message.content or "").strip()


def ask_stylist(client: OpenAI, prompt: str, model: str) -> str:
    resp = client.responses.create(
        model=model,
        input=prompt,
        temperature=0.4,
    )
    return resp.output_text or ""

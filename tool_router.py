"""
Tool calls the tutor model can make, and the router that executes them.

Every invocation gets exactly one acknowledgement, keyed by its id, sent
through the respond callback. Generation failures are acknowledged as failed
and never affect the session, except a rejected API key from the video
service, which also invalidates the credential and stops the session.
"""

import logging

from media_generation import CredentialInvalidError
from transcript import ImageEntry, PhaseInfo, PronunciationEntry, VideoEntry

logger = logging.getLogger(__name__)

# Tools available to the tutor (Gemini function declarations)
TOOL_DECLARATIONS = [
    {
        "name": "show_image",
        "description": "Gere uma imagem simples, clara e didática adequada à fase atual do aluno para ajudar a transmitir significado.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "prompt": {
                    "type": "STRING",
                    "description": 'Um prompt em inglês, simples e descritivo para a imagem. Ex: "a red ball", "a cat is sleeping".'
                }
            },
            "required": ["prompt"]
        }
    },
    {
        "name": "explain_pronunciation",
        "description": "Explica a pronúncia de uma palavra em inglês usando aproximações em português e descrevendo a articulação da boca.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "word": {"type": "STRING", "description": "A palavra em inglês."},
                "approximation_pt_br": {
                    "type": "STRING",
                    "description": 'A aproximação sonora em português (BR). Ex: "uóter".'
                },
                "explanation_pt_br": {
                    "type": "STRING",
                    "description": "A explicação de como mover a boca, lábios e língua, seguindo o modelo definido."
                }
            },
            "required": ["word", "approximation_pt_br", "explanation_pt_br"]
        }
    },
    {
        "name": "show_articulation_video",
        "description": "Gera um vídeo em close da boca pronunciando uma palavra ou frase lentamente para demonstrar a articulação.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "prompt": {
                    "type": "STRING",
                    "description": "Prompt para o vídeo: close da boca e rosto neutro, fundo claro, pronunciando lentamente a palavra em inglês."
                }
            },
            "required": ["prompt"]
        }
    },
    {
        "name": "update_phase",
        "description": "Atualiza a fase de desenvolvimento e idade linguística do aluno na interface.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "phase_name": {"type": "STRING", "description": 'O nome da fase atual. Ex: "FASE 1 — BEBÊ".'},
                "linguistic_age": {"type": "STRING", "description": 'A idade linguística aproximada. Ex: "0–2 anos".'}
            },
            "required": ["phase_name", "linguistic_age"]
        }
    },
]

REQUIRED_ARGS = {decl["name"]: decl["parameters"]["required"] for decl in TOOL_DECLARATIONS}


class _KeyRejected(Exception):
    """Carries the failed result of a call whose generator rejected the key."""

    def __init__(self, result):
        super().__init__(result)
        self.result = result


class ToolRouter:
    """Maps tool names to side effects on the tutor state.

    Args:
        state: TutorState (transcript, phase, generation flags)
        image_generator: object with async generate(prompt) -> GeneratedImage | None
        video_generator: object with async generate(prompt) -> url
        respond: callback(call_id, name, response_dict), fire-and-forget
        on_credential_invalid: callback() when the video service rejects the key
        still_current: callable() -> bool; False once the session that issued
            the call is gone, so late results are not shown
    """

    def __init__(self, state, image_generator, video_generator, respond,
                 on_credential_invalid=None, still_current=None):
        self.state = state
        self.image_generator = image_generator
        self.video_generator = video_generator
        self._respond = respond
        self._on_credential_invalid = on_credential_invalid
        self._still_current = still_current or (lambda: True)
        self._handlers = {
            "update_phase": self._update_phase,
            "explain_pronunciation": self._explain_pronunciation,
            "show_image": self._show_image,
            "show_articulation_video": self._show_video,
        }

    async def dispatch(self, call) -> str:
        """Run one ToolInvocation and send its acknowledgement."""
        logger.info("Tool call: %s(%s)", call.name, call.args)
        key_rejected = False
        handler = self._handlers.get(call.name)
        if handler is None:
            result = f"Unknown tool: {call.name}"
        else:
            missing = [a for a in REQUIRED_ARGS[call.name] if not call.args.get(a)]
            if missing:
                result = f"Missing arguments for {call.name}: {', '.join(missing)}"
            else:
                try:
                    result = await handler(call.args)
                except _KeyRejected as e:
                    result = e.result
                    key_rejected = True

        logger.info("Tool result for %s: %s", call.name, result[:200])
        self._respond(call.id, call.name, {"result": result})

        # The acknowledgement goes out before the session is torn down
        if key_rejected and self._on_credential_invalid and self._still_current():
            self._on_credential_invalid()
        return result

    def _append(self, entry):
        if self._still_current():
            self.state.transcript.append(entry)
        else:
            logger.debug("Session gone, dropping %s entry", entry.kind)

    async def _update_phase(self, args) -> str:
        if self._still_current():
            self.state.phase = PhaseInfo(name=str(args["phase_name"]),
                                         age=str(args["linguistic_age"]))
        return "Phase updated"

    async def _explain_pronunciation(self, args) -> str:
        self._append(PronunciationEntry(
            word=str(args["word"]),
            approximation=str(args["approximation_pt_br"]),
            explanation=str(args["explanation_pt_br"]),
        ))
        return "Pronunciation explained"

    async def _show_image(self, args) -> str:
        prompt = str(args["prompt"])
        self.state.set_generating("image", True)
        try:
            image = await self.image_generator.generate(prompt)
            if image is not None:
                self._append(ImageEntry(image_url=image.data_url, prompt=prompt))
            return f"Displayed image for: {prompt}"
        except Exception as e:
            logger.error("Image generation failed: %s", e)
            return f"Failed to show image for: {prompt}"
        finally:
            self.state.set_generating("image", False)

    async def _show_video(self, args) -> str:
        prompt = str(args["prompt"])
        self.state.set_generating("video", True)
        try:
            video_url = await self.video_generator.generate(prompt)
            self._append(VideoEntry(video_url=video_url, prompt=prompt))
            return f"Displayed video for: {prompt}"
        except CredentialInvalidError as e:
            logger.error("Video generation rejected the API key: %s", e)
            raise _KeyRejected(f"Failed to show video for: {prompt}") from e
        except Exception as e:
            logger.error("Video generation failed: %s", e)
            return f"Failed to show video for: {prompt}"
        finally:
            self.state.set_generating("video", False)

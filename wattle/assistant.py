"""
Assistant API Blueprint - analysis, questions and voice transcription
"""
import base64
import binascii
import re
import uuid

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from .analysis import analyze_record, answer_question, holistic_analysis, stored_holistic
from .auth import resolve_user_id
from .context import get_services
from .errors import UpstreamError, ValidationError
from .store import now_utc_iso

assistant_bp = Blueprint("assistant", __name__, url_prefix="/api")

VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")

MIN_AUDIO_BASE64 = 1000
MIN_AUDIO_BYTES = 500


def truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def text_field(body: dict, key: str, default: str = "") -> str:
    """A stripped string field from a JSON body; other types are a 400"""
    value = body.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip()


def conversations_path(uid: str) -> str:
    return f"users/{uid}/conversations"


def audio_extension(header: str, is_ios: bool) -> str:
    """File extension the transcription API should see for this recording"""
    if is_ios:
        return "m4a"
    m = re.match(r"data:(.*?);", header or "")
    mime = m.group(1) if m else ""
    if "mp4" in mime:
        return "m4a"
    if "mp3" in mime or "mpeg" in mime:
        return "mp3"
    if "wav" in mime:
        return "wav"
    return "webm"


@assistant_bp.route("/analyze", methods=["POST"])
@login_required
def analyze():
    body = json_body()
    uid = resolve_user_id(body.get("userId"))
    services = get_services()

    record_id = text_field(body, "recordId")
    areas = body.get("analysisAreas")
    if areas is not None and not (isinstance(areas, list) and all(isinstance(a, str) and a.strip() for a in areas)):
        raise ValidationError("analysisAreas must be a list of area names")

    result = {"success": True}
    if record_id:
        record = analyze_record(uid, record_id, services=services)
        result["analysis"] = record.get("analysis")
        result["recordId"] = record_id

    text, debug = holistic_analysis(
        uid,
        services=services,
        use_resources=truthy(body.get("useRag")),
        options={"analysisAreas": areas} if areas else None,
    )
    result["holisticAnalysis"] = text
    if debug:
        result["debug"] = debug
    return jsonify(result), 200


@assistant_bp.route("/analysis/holistic", methods=["GET"])
@login_required
def get_holistic():
    doc = stored_holistic(get_services(), current_user.id)
    return jsonify({"success": True, "analysis": doc}), 200


@assistant_bp.route("/question", methods=["POST"])
@login_required
def question():
    body = json_body()
    text = text_field(body, "question")
    if not text:
        raise ValidationError("Question is required")
    uid = resolve_user_id(body.get("userId"))
    previous_response_id = text_field(body, "previousResponseId") or None
    generate_audio = truthy(body.get("generateAudio"))
    voice = (text_field(body, "voicePreference") or "alloy").lower()
    if generate_audio and voice not in VOICES:
        raise ValidationError(f"Invalid voice: {voice}")

    services = get_services()
    result = answer_question(uid, text, previous_response_id, services=services)

    turn = {
        "question": text,
        "answer": result["answer"],
        "timestamp": now_utc_iso(),
        "responseId": result["responseId"],
    }
    if previous_response_id:
        turn["previousResponseId"] = previous_response_id

    audio_url = None
    audio_data = None
    if generate_audio and result["responseId"]:
        try:
            audio = services.assistant.speech(result["answer"], voice=voice)
        except UpstreamError as e:
            current_app.logger.warning(f"Speech generation failed: {e.message}")
            audio = None
        if audio:
            try:
                audio_url = services.storage.upload(f"users/{uid}/audio/{uuid.uuid4().hex}.mp3", audio, "audio/mpeg")
                turn["audioUrl"] = audio_url
            except Exception as e:
                current_app.logger.warning(f"Audio upload failed, returning inline audio: {e}")
                audio_data = base64.b64encode(audio).decode("ascii")

    conversation_id = services.store.add(conversations_path(uid), turn)

    response = {
        "success": True,
        "answer": result["answer"],
        "sections": result["sections"],
        "id": conversation_id,
        "responseId": result["responseId"],
    }
    if audio_url:
        response["audioUrl"] = audio_url
    elif audio_data:
        response["audioData"] = audio_data
    return jsonify(response), 200


@assistant_bp.route("/whisper", methods=["POST"])
@login_required
def whisper():
    body = json_body()
    audio = body.get("audio") or ""
    if not isinstance(audio, str) or not audio:
        raise ValidationError("Audio data is required")

    header, sep, payload = audio.partition(",")
    if not sep:
        header, payload = "", audio
    if len(payload) < MIN_AUDIO_BASE64:
        raise ValidationError("Audio data is too short. Please speak longer and more clearly.")
    try:
        data = base64.b64decode(payload)
    except (binascii.Error, ValueError):
        raise ValidationError("Audio data is not valid base64")
    if len(data) < MIN_AUDIO_BYTES:
        raise ValidationError("Audio recording is too short. Please speak longer and more clearly.")

    ext = audio_extension(header, truthy(body.get("isIOS")))
    try:
        text = get_services().assistant.transcribe(data, f"audio.{ext}")
    except UpstreamError as e:
        msg = e.message.lower()
        if "invalid file format" in msg or "unsupported media type" in msg:
            raise ValidationError(
                "Invalid file format. This device may not support audio recording in a compatible format."
            )
        raise
    return jsonify({"success": True, "text": text}), 200

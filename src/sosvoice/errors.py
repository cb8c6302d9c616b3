"""Error taxonomy for the voice assistant."""

from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    """Base class. ``user_message`` is safe to show in a notification."""

    title = "Error"
    user_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, user_message: Optional[str] = None) -> None:
        super().__init__(message or user_message or self.user_message)
        if user_message:
            self.user_message = user_message


class CapabilityUnavailable(AssistantError):
    title = "Not supported"
    user_message = "Speech recognition is not available on this system."


class PermissionDenied(AssistantError):
    title = "Permission denied"
    user_message = "Access was refused. Check your system permissions."


class DeviceError(AssistantError):
    title = "Microphone unavailable"
    user_message = "The microphone is busy or missing."


class RecognitionError(AssistantError):
    title = "Speech recognition error"
    user_message = "Speech recognition failed. Please try again or type instead."

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Speech recognition error: {code}")
        self.code = code


class GeocodingFailure(AssistantError):
    title = "Geocoding failed"
    user_message = "Could not look up that address."


class LocationUnavailable(AssistantError):
    title = "Location error"
    user_message = "Please enable location services or type the address manually."


class ClassifierFailure(AssistantError):
    title = "Assistant unavailable"
    user_message = "The assistant could not process the request."


class BroadcastFailure(AssistantError):
    title = "Broadcast failed"
    user_message = "Failed to broadcast the emergency."

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.details = details or {}


class SessionStateError(AssistantError):
    title = "Invalid action"
    user_message = "That action is not available right now."

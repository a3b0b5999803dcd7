"""Error taxonomy shared by the services and rendered by the HTTP layer."""

from typing import Any, Dict, List, Optional

PRIVATE_SUGGESTIONS: List[str] = [
    "Follow the account and wait for approval. / 계정을 팔로우하고 승인을 기다려 주세요.",
    "Open the reel in the Instagram app while logged in and share it from there. / 로그인한 Instagram 앱에서 직접 공유해 주세요.",
    "Use screen recording while the video plays. / 영상 재생 중 화면 녹화를 이용해 주세요.",
    "Ask the creator to make the reel public. / 제작자에게 공개 전환을 요청해 주세요.",
    "Log in to Instagram in your browser and try again. / 브라우저에서 Instagram에 로그인한 뒤 다시 시도해 주세요.",
]

PRIVATE_ALTERNATIVE_METHODS: List[Dict[str, str]] = [
    {
        "title": "Screen Recording",
        "description": "Record the phone/computer screen while the video is playing.",
    },
    {
        "title": "Instagram Share",
        "description": "Share the reel inside the Instagram app and use the \"Copy Link\" option.",
    },
    {
        "title": "Browser Login",
        "description": "Log in to Instagram in the browser, then try again.",
    },
]


def bilingual(english: str, korean: str) -> str:
    return f"{english}\n{korean}"


class ReelServiceError(Exception):
    """Base class for failures that map onto a single JSON error response."""

    status_code = 500
    default_message = bilingual(
        "Something went wrong. Please try again later.",
        "오류가 발생했습니다. 잠시 후 다시 시도해 주세요.",
    )

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        # detail은 로그 전용. 응답 본문에는 포함하지 않는다.
        self.detail = detail
        super().__init__(self.message)

    def payload(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message}


class InvalidInput(ReelServiceError):
    status_code = 400
    default_message = bilingual(
        "The request is missing a valid value.",
        "요청 값이 올바르지 않습니다.",
    )


class PrivateContent(ReelServiceError):
    status_code = 403
    default_message = bilingual(
        "This reel belongs to a private account and cannot be downloaded.",
        "비공개 계정의 게시물이라 다운로드할 수 없습니다.",
    )

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["isPrivate"] = True
        body["suggestions"] = list(PRIVATE_SUGGESTIONS)
        body["alternativeMethods"] = [dict(item) for item in PRIVATE_ALTERNATIVE_METHODS]
        return body


class ResolutionFailed(ReelServiceError):
    status_code = 400
    default_message = bilingual(
        "Could not find the video URL. Check the link, make sure the reel is public, and try again.",
        "영상 주소를 찾지 못했습니다. 링크와 공개 여부를 확인한 뒤 다시 시도해 주세요.",
    )


class UpstreamFetchFailed(ReelServiceError):
    status_code = 500
    default_message = bilingual(
        "Fetching the media from Instagram failed. Please try again.",
        "Instagram에서 미디어를 가져오지 못했습니다. 다시 시도해 주세요.",
    )


class TransformFailed(ReelServiceError):
    status_code = 500
    default_message = bilingual(
        "Crop processing failed. Please try again.",
        "자르기 처리 중 오류가 발생했습니다. 다시 시도해 주세요.",
    )


class StorageFailed(ReelServiceError):
    status_code = 500
    default_message = bilingual(
        "A temporary file could not be written or read.",
        "임시 파일을 처리하지 못했습니다.",
    )


class NotFoundError(ReelServiceError):
    status_code = 404
    default_message = bilingual(
        "File not found.",
        "파일을 찾을 수 없습니다.",
    )


__all__ = [
    "InvalidInput",
    "NotFoundError",
    "PRIVATE_ALTERNATIVE_METHODS",
    "PRIVATE_SUGGESTIONS",
    "PrivateContent",
    "ReelServiceError",
    "ResolutionFailed",
    "StorageFailed",
    "TransformFailed",
    "UpstreamFetchFailed",
    "bilingual",
]

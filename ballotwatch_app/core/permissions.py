from collections.abc import Callable, Collection
from functools import wraps
from typing import ParamSpec, TypeVar

from django.http import HttpRequest, HttpResponse, JsonResponse

from core.models import Member

ROLE_MEMBER = Member.Role.member
ROLE_OFFICER = Member.Role.officer
ROLE_ADMIN = Member.Role.admin

CONTEST_MANAGE_ROLES: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_OFFICER})


P = ParamSpec("P")
R = TypeVar("R", bound=HttpResponse)


def get_username(request: HttpRequest) -> str:
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        return ""
    return str(user.get_username() or "").strip()


def caller_role_for_request(request: HttpRequest) -> str:
    """Role used for results visibility and contest management.

    Superusers are administrators; everyone else gets the role of their
    active member record, and anonymous callers are plain members.
    """
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        return ROLE_MEMBER
    if user.is_superuser:
        return ROLE_ADMIN

    role = (
        Member.objects.filter(username=user.get_username(), is_active=True)
        .values_list("role", flat=True)
        .first()
    )
    return str(role or ROLE_MEMBER)


def json_role_required(roles: Collection[str]) -> Callable[[Callable[P, R]], Callable[P, HttpResponse]]:
    """Decorator for JSON endpoints restricted to callers holding one of ``roles``.

    Returns a JSON 403 response instead of redirecting or rendering HTML.
    """
    allowed_roles = frozenset(roles)
    if not allowed_roles:
        raise ValueError("roles must not be empty")

    def decorator(view_func: Callable[P, R]) -> Callable[P, HttpResponse]:
        @wraps(view_func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> HttpResponse:
            if not args:
                return JsonResponse({"error": "Permission denied."}, status=403)

            request = args[0]
            if not isinstance(request, HttpRequest):
                return JsonResponse({"error": "Permission denied."}, status=403)

            if not get_username(request):
                return JsonResponse({"error": "Authentication required."}, status=403)

            if caller_role_for_request(request) not in allowed_roles:
                return JsonResponse({"error": "Permission denied."}, status=403)

            return view_func(*args, **kwargs)

        return wrapper

    return decorator

"""Cashier sign-in on top of the backend's identity provider, with a cached auth_state."""
import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set

from local_store import DEVICE_NAMESPACE, dump_json, load_json, remove_key
from remote import RemoteError

log = logging.getLogger('pos.auth')

AUTH_STATE_KEY = 'auth_state'
AUTH_CACHE_TTL = 60 * 60
ROLES = ('admin', 'manager', 'cashier', 'inventory')
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class AuthService:
    def __init__(self, remote, store, clock: Callable[[], float] = time.time, cache_ttl: float = AUTH_CACHE_TTL):
        self.remote = remote
        self.store = store
        self.clock = clock
        self.cache_ttl = cache_ttl

    @staticmethod
    def validate_credentials(email: Any, password: Any) -> Optional[str]:
        email = str(email or '').strip()
        if not email or not password:
            return 'Email and password are required'
        if not _EMAIL_RE.match(email):
            return 'Enter a valid email address'
        return None

    def _cache_user(self, user: Dict[str, Any]) -> None:
        dump_json(self.store, DEVICE_NAMESPACE, AUTH_STATE_KEY, {'user': user, 'timestamp': self.clock()})

    def login(self, email: str, password: str) -> Dict[str, Any]:
        problem = self.validate_credentials(email, password)
        if problem:
            return {'success': False, 'error': problem}
        email = str(email).strip()
        try:
            session = self.remote.sign_in_with_password(email, password)
        except RemoteError as exc:
            log.warning('Sign-in failed for %s: %s', email, exc)
            return {'success': False, 'error': 'Invalid email or password' if exc.status in (400, 401) else str(exc)}
        account = session.get('user') or {}
        profile = self.remote.get_profile(user_id=account.get('id'), email=account.get('email') or email)
        if not profile:
            self.remote.sign_out()
            return {'success': False, 'error': 'User details not found'}
        if not profile.get('is_active', False):
            self.remote.sign_out()
            return {'success': False, 'error': 'User account is inactive'}
        self._cache_user(profile)
        log.info('Signed in %s (role=%s, store=%s)', profile.get('email'), profile.get('role'), profile.get('store_id'))
        return {'success': True, 'user': profile}

    def logout(self) -> Dict[str, Any]:
        self.remote.sign_out()
        remove_key(self.store, DEVICE_NAMESPACE, AUTH_STATE_KEY)
        return {'success': True}

    def current_user(self) -> Optional[Dict[str, Any]]:
        """Cached user while fresh, otherwise revalidated against the live session."""
        cached = load_json(self.store, DEVICE_NAMESPACE, AUTH_STATE_KEY)
        if isinstance(cached, dict) and isinstance(cached.get('user'), dict):
            try:
                age = self.clock() - float(cached.get('timestamp') or 0)
            except (TypeError, ValueError):
                age = self.cache_ttl
            if age < self.cache_ttl:
                return cached['user']
        account = self.remote.get_session_user()
        if not account:
            remove_key(self.store, DEVICE_NAMESPACE, AUTH_STATE_KEY)
            return None
        profile = self.remote.get_profile(user_id=account.get('id'), email=account.get('email'))
        if not profile or not profile.get('is_active', False):
            remove_key(self.store, DEVICE_NAMESPACE, AUTH_STATE_KEY)
            return None
        self._cache_user(profile)
        return profile

    @staticmethod
    def _check_roles(roles: Iterable[str]) -> Set[str]:
        wanted = set(roles)
        unknown = wanted - set(ROLES)
        if unknown:
            raise ValueError(f"unknown role(s): {', '.join(sorted(unknown))}")
        return wanted

    def has_role(self, role: str) -> bool:
        self._check_roles([role])
        user = self.current_user()
        return bool(user) and user.get('role') == role

    def has_any_role(self, roles: Iterable[str]) -> bool:
        wanted = self._check_roles(roles)
        user = self.current_user()
        return bool(user) and user.get('role') in wanted

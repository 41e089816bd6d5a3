#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os, sys
import re
import json
import hmac
import hashlib
import logging
import random
import importlib
import threading
import wsgiref.util

from contextlib import contextmanager
from functools import lru_cache, partial
from http.cookies import SimpleCookie
from urllib.parse import parse_qsl, quote, urlencode
from uuid import uuid4

from jinja2 import Environment, FileSystemLoader, FileSystemBytecodeCache, TemplateNotFound
from jinja2.ext import Extension

__version__ = (1, 0, 0)

# Prepares logging

logger = logging.getLogger("PugBicchiere")
logging.basicConfig()

# End of logging part


# Part I - Common ground

class SuperDict(dict):
    "Dictionary that makes no difference between items and attributes"

    def __getattr__(self, attr):
        if attr.startswith('__'):
            raise AttributeError(attr)
        return super().get(attr)

    def __setattr__(self, attr, val):
        self.__setitem__(attr, val)

    def __delattr__(self, attr):
        if attr in self:
            self.__delitem__(attr)

    def __getitem__(self, key):
        return super().get(key)

    def __delitem__(self, key):
        if key in self:
            super().__delitem__(key)

    def __repr__(self) -> str:
        return json.dumps(self, default=lambda x: repr(x))


class PugBicchiereError(Exception):
    pass


class InvalidOptionError(PugBicchiereError, ValueError):

    def __init__(self, name):
        super().__init__(f"{name} is not a valid option name.")
        self.name = name


class ForbiddenParameterError(PugBicchiereError, ValueError):
    pass


class RouteNotFoundError(PugBicchiereError, KeyError):
    pass


# Miscelaneous configuration options

default_config = SuperDict({
    'app_directory': 'app',
    'src_directory': 'src',
    'web_directory': 'static',
    'cache_directory': os.path.join('var', 'cache'),
    'templates_directory': 'templates',
    'assets_directory': 'assets',
    'assets_url': '/static',
    'assets_version': None,
    'expression_language': 'js',
    'extensions': ('.pug', '.jade'),
    'logout_route': 'logout',
    'locale': 'en',
})

# End of miscelaneous configuration options


def get_version():
    major, minor, release = __version__
    return f"{major}.{minor}.{release}"


def qs2dict(qs):
    if type(qs) is bytes:
        qs = qs.decode('utf-8')
    return dict(parse_qsl(qs))


def get_relative_path(base_path, target_path):
    """
    Path of `target_path` relative to the directory of `base_path`, both being
    absolute paths ("/a/b/c", "/a/d" -> "../d").
    """
    if base_path == target_path:
        return ''
    source_dirs = (base_path[1:] if base_path.startswith('/') else base_path).split('/')
    target_dirs = (target_path[1:] if target_path.startswith('/') else target_path).split('/')
    source_dirs.pop()
    target_file = target_dirs.pop()

    common = 0
    for source_dir, target_dir in zip(source_dirs, target_dirs):
        if source_dir != target_dir:
            break
        common += 1

    path = '../' * (len(source_dirs) - common) + '/'.join(target_dirs[common:] + [target_file])
    colon = path.find(':')
    slash = path.find('/')
    if not path or path.startswith('/') or (colon >= 0 and (slash < 0 or colon < slash)):
        return f"./{path}"
    return path


def random_int(minimum=0, maximum=None):
    "Random integer between both bounds, included. Target of the 'random' helper name"
    if maximum is None:
        maximum = 2 ** 31 - 1
    return random.randint(minimum, maximum)

# End of Part I - Common ground


# Part II - Pug source rewriting

# Bare helper names usable in Pug code, and the call each one becomes.
# A plain string is a function name, a pair is (helper, method) on the view.
HELPER_CALLS = {
    'random': 'random_int',
    'asset': ('assets', 'getUrl'),
    'asset_version': ('assets', 'getVersion'),
    'css_url': ('css', 'getUrl'),
    'csrf_token': ('form', 'csrfToken'),
    'logout_url': ('logout', 'url'),
    'logout_path': ('logout', 'path'),
    'url': ('router', 'url'),
    'path': ('router', 'path'),
    'absolute_url': ('http', 'generateAbsoluteUrl'),
    'relative_path': ('http', 'generateRelativePath'),
    'is_granted': ('security', 'isGranted'),
}

HELPER_PATTERNS = {
    'js': 'view.%s.%s',
    'php': "$view['%s']->%s",
}

# Quoted strings; a backslash escapes any character, newlines included
STRING_LITERAL = re.compile(r'"(?:\\.|[^"\\])*"' r"|'(?:\\.|[^'\\])*'", re.DOTALL)

# A call is only rewritten right after one of: => = + , : ? ( .
# The dot does not count when it is a member access on a receiver (foo.asset).
# Whitespace between the gate and the name is written back: `p= asset(` becomes
# `p= view.assets.getUrl(`, not `p=view.assets.getUrl(`.
CALL_PREFIX = r'(?:(?<==>)|(?<=[=+,:?(])|(?<=\.)(?<![\w$)\]]\.))'


def helper_target(function, mode='js'):
    if isinstance(function, str):
        return function
    namespace, method = function
    return HELPER_PATTERNS['js' if mode == 'js' else 'php'] % (namespace, method)


@lru_cache(maxsize=32)
def _call_pattern(names):
    alternatives = '|'.join(re.escape(name) for name in names)
    return re.compile(r'%s(\s*)(%s)\s*\(' % (CALL_PREFIX, alternatives))


def replace_code(code, table=HELPER_CALLS, mode='js'):
    "Rewrites helper calls in a piece of Pug code holding no string literal"
    if not code or not table:
        return code
    targets = {name: helper_target(function, mode) for name, function in table.items()}
    pattern = _call_pattern(tuple(targets))
    return pattern.sub(lambda m: f"{m.group(1)}{targets[m.group(2)]}(", code)


def rewrite(source, table=HELPER_CALLS, mode='js'):
    """
    Turns bare helper calls of a Pug source into calls on the ``view`` object.

    String literals are copied untouched, everything between them is handed
    to replace_code. `mode` is the expression language of the generated calls:
    'js' gives ``view.assets.getUrl(``, anything else ``$view['assets']->getUrl(``.
    """
    chunks = []
    position = 0
    for literal in STRING_LITERAL.finditer(source):
        chunks.append(replace_code(source[position:literal.start()], table, mode))
        chunks.append(literal.group(0))
        position = literal.end()
    chunks.append(replace_code(source[position:], table, mode))
    return ''.join(chunks)

# End of Part II - Pug source rewriting


# Part III - Requests, sessions and routing

class Session(SuperDict):
    """
    Request session. Bicchiere stores its own session in the environ under
    'bicchiere_session'; this one is used when no framework session is there.
    """

    secret = None

    @classmethod
    def encrypt(cls, text=None):
        if not cls.secret:
            cls.secret = uuid4().hex
        hmac2 = hmac.new(key=(text or uuid4().hex).encode(), digestmod=hashlib.sha256)
        hmac2.update(bytes(cls.secret, encoding="utf-8"))
        return hmac2.hexdigest()

    def __init__(self, sid=None, **kw):
        super().__init__(**kw)
        if sid and len(sid) < 32:
            raise KeyError("Wrong SID format")
        self.sid = sid or self.encrypt()


class Request:
    "WSGI environ, seen from the template helpers"

    session_key = 'bicchiere_session'

    def __init__(self, environ):
        self.environ = environ
        self.query = qs2dict(environ.get('QUERY_STRING', ''))
        self.cookies = SimpleCookie(environ.get('HTTP_COOKIE', ''))

    @property
    def method(self):
        return self.environ.get('REQUEST_METHOD', 'GET').upper()

    @property
    def scheme(self):
        return self.environ.get('wsgi.url_scheme') or wsgiref.util.guess_scheme(self.environ)

    @property
    def host(self):
        host = self.environ.get('HTTP_HOST')
        if not host:
            host = self.environ.get('SERVER_NAME', 'localhost')
            port = self.environ.get('SERVER_PORT', '')
            if port and port != ('443' if self.scheme == 'https' else '80'):
                host = f"{host}:{port}"
        return host

    @property
    def base_url(self):
        return self.environ.get('SCRIPT_NAME', '').rstrip('/')

    @property
    def path(self):
        return self.environ.get('PATH_INFO') or '/'

    @property
    def request_uri(self):
        qs = self.environ.get('QUERY_STRING')
        return f"{self.base_url}{self.path}" + (f"?{qs}" if qs else '')

    @property
    def session(self):
        session = self.environ.get(self.session_key)
        if session is None:
            session = self.environ[self.session_key] = Session()
        return session

    def get(self, key, default=None):
        return self.query.get(key, default)

    def get_locale(self, default='en'):
        accepted = self.environ.get('HTTP_ACCEPT_LANGUAGE', '')
        locale = accepted.split(',')[0].split(';')[0].strip()
        return locale.replace('-', '_') if locale else default

    def get_scheme_and_http_host(self):
        return f"{self.scheme}://{self.host}"

    def get_uri_for_path(self, path):
        return f"{self.get_scheme_and_http_host()}{self.base_url}{path}"

    def get_relative_uri_for_path(self, path):
        if not path or not path.startswith('/'):
            return path
        return get_relative_path(self.path, path)


class RequestStack:
    "Requests being handled by the current thread, master request first"

    def __init__(self):
        self._local_data = threading.local()

    @property
    def requests(self):
        return self._local_data.__dict__.setdefault('requests', [])

    def push(self, request):
        if not isinstance(request, Request):
            request = Request(request)
        self.requests.append(request)
        return request

    def pop(self):
        return self.requests.pop() if self.requests else None

    def get_current_request(self):
        return self.requests[-1] if self.requests else None

    def get_master_request(self):
        return self.requests[0] if self.requests else None

    @contextmanager
    def request(self, environ):
        request = self.push(environ)
        try:
            yield request
        finally:
            self.pop()


class RequestStackMiddleware:
    """
    WSGI middleware keeping the request on the stack while the wrapped
    application runs. Generator responses are packed in a list so that views
    rendered lazily still see their request.
    """

    def __init__(self, application, request_stack):
        self.application = application
        self.request_stack = request_stack

    def __call__(self, environ, start_response):
        with self.request_stack.request(environ):
            response = self.application(environ, start_response)
            if type(response).__name__ == 'generator':
                response = [x for x in response]
            return response


class RequestContext:
    "Where URLs are generated for, when there is no request to take it from"

    def __init__(self, base_url='', method='GET', host='localhost', scheme='http',
                 http_port=80, https_port=443, path_info='/', query_string=''):
        self.base_url = base_url
        self.method = method
        self.host = host
        self.scheme = scheme
        self.http_port = http_port
        self.https_port = https_port
        self.path_info = path_info
        self.query_string = query_string

    @classmethod
    def from_request(cls, request):
        host, _, port = request.host.partition(':')
        context = cls(base_url=request.base_url, method=request.method, host=host,
                      scheme=request.scheme, path_info=request.path,
                      query_string=request.environ.get('QUERY_STRING', ''))
        if port:
            if context.scheme == 'https':
                context.https_port = int(port)
            else:
                context.http_port = int(port)
        return context

    def get_port_suffix(self):
        if self.scheme == 'http' and self.http_port != 80:
            return f":{self.http_port}"
        if self.scheme == 'https' and self.https_port != 443:
            return f":{self.https_port}"
        return ''

    def get_http_host(self):
        return f"{self.host}{self.get_port_suffix()}"


# Routing classes

ROUTE_PARAMETER = r'(<((\w+):)?(\w+)>)'


def build_route_pattern(route):
    accepted_types = {'str': str, 'int': int, 'float': float}
    params_types = {}
    replace_regex = r'(?P<{}>[^/]+)'

    def regex_parser(m):
        ptype = m.group(3) or 'str'
        if ptype not in accepted_types:
            raise ValueError(f"Unknown parameter type: {ptype}")
        params_types[m.group(4)] = accepted_types[ptype]
        return replace_regex.format(m.group(4))

    route_regex = re.sub(ROUTE_PARAMETER, regex_parser, route)
    return re.compile("^{}$".format(route_regex)), params_types


class Route:
    "Named route, matching paths and building them back from parameters"

    def __init__(self, name, route, func=None, methods=('GET',)):
        self.name = name
        self.route = route
        self.func = func
        self.methods = list(methods)
        self.pattern, self.param_types = build_route_pattern(route)

    def match(self, path):
        if not path:
            return None
        m = self.pattern.match(path)
        if not m:
            return None
        return {argname: self.param_types[argname](value) for argname, value in m.groupdict().items()}

    def build(self, parameters=None):
        parameters = dict(parameters or {})

        def param_replacer(m):
            argname = m.group(4)
            if argname not in parameters:
                raise ValueError(f'Missing parameter "{argname}" to generate a URL for route "{self.name}".')
            return quote(str(parameters.pop(argname)), safe='')

        path = re.sub(ROUTE_PARAMETER, param_replacer, self.route)
        extra = {k: v for k, v in parameters.items() if v is not None}
        if extra:
            path = f"{path}?{urlencode(extra, doseq=True)}"
        return path

    def __str__(self):
        return f"""
               Name: {self.name}
               Pattern: {str(self.pattern)}
               Handler: {self.func.__name__ if self.func else None}
               Parameter Types:  {self.param_types}
               Methods: {self.methods}
               """


class Router:
    "Named routes of the application, used to generate URLs from views"

    def __init__(self, context=None):
        self.routes = {}
        self.context = context or RequestContext()

    def add(self, name, route, func=None, methods=('GET',)):
        self.routes[name] = Route(name, route, func, methods)
        return self.routes[name]

    def route(self, route_str, name=None, methods=('GET',)):
        def decorator(func):
            self.add(name or func.__name__, route_str, func, methods)
            return func
        return decorator

    def match(self, path):
        for route in self.routes.values():
            args = route.match(path)
            if args is not None:
                return route, args
        return None

    def generate(self, name, parameters=None, absolute=False, scheme_relative=False,
                 relative=False, context=None):
        route = self.routes.get(name)
        if route is None:
            raise RouteNotFoundError(
                f'Unable to generate a URL for the named route "{name}" as such route does not exist.')
        context = context or self.context
        path = route.build(parameters)
        if relative:
            return get_relative_path(context.path_info, path)
        path = f"{context.base_url}{path}"
        if scheme_relative:
            return f"//{context.get_http_host()}{path}"
        if absolute:
            return f"{context.scheme}://{context.get_http_host()}{path}"
        return path

# End of routing classes

# End of Part III - Requests, sessions and routing


# Part IV - Template helpers

# Helper methods keep the camelCase names views call them by (see HELPER_CALLS).

class AssetsHelper:
    "Public URLs of the static assets"

    def __init__(self, base_url='/static', version=None, version_format='%s?%s', packages=None):
        self.base_url = base_url.rstrip('/')
        self.version = version
        self.version_format = version_format
        self.packages = dict(packages or {})

    def getUrl(self, path, package=None):
        if package is not None:
            return self.packages[package].getUrl(path)
        if '://' in path or path.startswith('//'):
            return path
        url = f"{self.base_url}/{path.lstrip('/')}"
        if self.version:
            url = self.version_format % (url, self.version)
        return url

    def getVersion(self, path, package=None):
        if package is not None:
            return self.packages[package].getVersion(path)
        return self.version or ''


class CssHelper:

    def __init__(self, assets):
        self.assets = assets

    def getUrl(self, path):
        url = self.assets.getUrl(path).replace("'", "\\'")
        return f"url('{url}')"


class CsrfTokenManager:
    "CSRF tokens kept in the session of the current request"

    session_prefix = '_csrf/'

    def __init__(self, request_stack=None):
        self.request_stack = request_stack
        self._local_data = threading.local()

    def get_storage(self):
        "Session of the current request or, outside requests, tokens of the current thread"
        request = self.request_stack.get_current_request() if self.request_stack else None
        if request:
            return request.session
        return self._local_data.__dict__.setdefault('tokens', SuperDict())

    def get_token(self, token_id):
        storage = self.get_storage()
        key = f"{self.session_prefix}{token_id}"
        if not storage.get(key):
            storage[key] = Session.encrypt(f"{token_id}{uuid4().hex}")
        return storage[key]

    def refresh_token(self, token_id):
        self.remove_token(token_id)
        return self.get_token(token_id)

    def remove_token(self, token_id):
        return self.get_storage().pop(f"{self.session_prefix}{token_id}", None)

    def is_token_valid(self, token_id, value):
        stored = self.get_storage().get(f"{self.session_prefix}{token_id}")
        return bool(stored and value) and hmac.compare_digest(stored, value)


class FormHelper:

    def __init__(self, csrf_token_manager):
        self.csrf_token_manager = csrf_token_manager

    def csrfToken(self, token_id='form'):
        return self.csrf_token_manager.get_token(token_id)


class Token:
    "Authenticated user and its roles"

    def __init__(self, user, roles=()):
        self.user = user
        self.roles = list(roles)

    def get_user(self):
        return self.user

    def get_roles(self):
        return self.roles

    def __str__(self):
        return str(self.user)


class TokenStorage:
    "Security token of the request handled by the current thread"

    def __init__(self, token=None):
        self._local_data = threading.local()
        self._default_token = token

    def get_token(self):
        return self._local_data.__dict__.get('token', self._default_token)

    def set_token(self, token):
        self._local_data.token = token


class SecurityHelper:

    def __init__(self, token_storage=None, access_decision=None):
        self.token_storage = token_storage
        self.access_decision = access_decision

    def isGranted(self, role, subject=None):
        token = self.token_storage.get_token() if self.token_storage else None
        if token is None:
            return False
        if self.access_decision:
            return bool(self.access_decision(token, role, subject))
        roles = role if isinstance(role, (list, tuple, set)) else [role]
        return any(r in token.get_roles() for r in roles)


class RouterHelper:

    def __init__(self, router, request_stack=None):
        self.router = router
        self.request_stack = request_stack

    def get_context(self):
        request = self.request_stack.get_current_request() if self.request_stack else None
        return RequestContext.from_request(request) if request else self.router.context

    def path(self, name, parameters=None, relative=False):
        return self.router.generate(name, parameters, relative=relative, context=self.get_context())

    def url(self, name, parameters=None, scheme_relative=False):
        return self.router.generate(name, parameters, absolute=True,
                                    scheme_relative=scheme_relative, context=self.get_context())


class LogoutUrlHelper(RouterHelper):
    """
    Logout links. `routes` maps firewall keys to route names; when no key is
    asked for, `route_name` is used.
    """

    def __init__(self, router, request_stack=None, route_name='logout', routes=None):
        super().__init__(router, request_stack)
        self.route_name = route_name
        self.routes = dict(routes or {})

    def get_route_name(self, key=None):
        if key is None:
            return self.route_name
        return self.routes[key]

    def path(self, key=None):
        return super().path(self.get_route_name(key))

    def url(self, key=None):
        return super().url(self.get_route_name(key))


class HttpHelper:
    "Absolute and relative URLs built from the current request"

    def __init__(self, request_stack=None, request_context=None):
        self.request_stack = request_stack
        self.request_context = request_context

    def generateAbsoluteUrl(self, path):
        if '://' in path or path.startswith('//'):
            return path

        request = self.request_stack.get_master_request() if self.request_stack else None
        if request is None:
            context = self.request_context
            if context is None or not context.host:
                return path
            if path.startswith('#'):
                qs = context.query_string
                path = f"{context.path_info}{'?' + qs if qs else ''}{path}"
            elif path.startswith('?'):
                path = f"{context.path_info}{path}"
            if not path.startswith('/'):
                path = f"{context.base_url.rstrip('/')}/{path}"
            return f"{context.scheme}://{context.get_http_host()}{path}"

        if path.startswith('#'):
            path = f"{request.request_uri}{path}"
        elif path.startswith('?'):
            path = f"{request.path}{path}"

        if not path.startswith('/'):
            prefix = request.path
            position = prefix.rfind('/')
            if position != len(prefix) - 1:
                prefix = prefix[:position] + '/'
            return request.get_uri_for_path(f"{prefix}{path}")

        return f"{request.get_scheme_and_http_host()}{path}"

    def generateRelativePath(self, path):
        if '://' in path or path.startswith('//'):
            return path
        request = self.request_stack.get_master_request() if self.request_stack else None
        if request is None:
            return path
        return request.get_relative_uri_for_path(path)


class SessionHelper:

    def __init__(self, request_stack):
        self.request_stack = request_stack

    def get_session(self):
        request = self.request_stack.get_current_request()
        return request.session if request else SuperDict()

    def get(self, name, default=None):
        return self.get_session().get(name, default)

    def has(self, name):
        return name in self.get_session()


class RequestHelper:

    def __init__(self, request_stack, default_locale='en'):
        self.request_stack = request_stack
        self.default_locale = default_locale

    def getParameter(self, key, default=None):
        request = self.request_stack.get_current_request()
        return request.get(key, default) if request else default

    def getLocale(self):
        request = self.request_stack.get_current_request()
        return request.get_locale(self.default_locale) if request else self.default_locale


class AppVariable:
    "Shared with every view as ``app``"

    def __init__(self):
        self.debug = False
        self.environment = None
        self.request_stack = None
        self.token_storage = None

    def set_debug(self, debug):
        self.debug = debug

    def set_environment(self, environment):
        self.environment = environment

    def set_request_stack(self, request_stack):
        self.request_stack = request_stack

    def set_token_storage(self, token_storage):
        self.token_storage = token_storage

    @property
    def token(self):
        return self.token_storage.get_token() if self.token_storage else None

    @property
    def user(self):
        token = self.token
        return token.get_user() if token else None

    @property
    def request(self):
        return self.request_stack.get_current_request() if self.request_stack else None

    @property
    def session(self):
        request = self.request
        return request.session if request else None


def helper_name(helper):
    "Name a helper instance is registered with: CustomHelper -> custom"
    name = re.sub(r'Helper$', '', helper.__class__.__name__) or helper.__class__.__name__
    return name[:1].lower() + name[1:]

# End of Part IV - Template helpers


# Part V - Kernel

class Container(SuperDict):
    "Services by id"

    def has(self, service_id):
        return service_id in self

    def get(self, service_id):
        if service_id not in self:
            raise KeyError(f'You have requested a non-existent service "{service_id}".')
        return super().get(service_id)

    def set(self, service_id, service):
        self[service_id] = service


class Kernel:
    """
    Host application seen by the Pug engine: project layout, environment,
    debug flag and services.

    project_dir/
        app/templates     views addressed by plain names
        app/assets
        src/<Bundle>/templates, src/<Bundle>/assets
        static            public directory
        var/cache/<environment>
    """

    def __init__(self, project_dir, environment='prod', debug=False, container=None, bundles=None, config=None):
        self.project_dir = os.path.abspath(str(project_dir))
        self.environment = environment
        self.debug = debug
        self.config = SuperDict(default_config)
        self.config.update(config or {})
        self.container = container if container is not None else Container()
        self.bundles = {}
        if bundles is None:
            self.discover_bundles()
        else:
            for name, path in dict(bundles).items():
                self.register_bundle(name, path)
        self._init_container()

    def _init_container(self):
        services = self.container
        if not services.has('request_stack'):
            services.set('request_stack', RequestStack())
        if not services.has('router.request_context'):
            services.set('router.request_context', RequestContext())
        if not services.has('router'):
            services.set('router', Router(services.get('router.request_context')))
        if not services.has('security.token_storage'):
            services.set('security.token_storage', TokenStorage())
        if not services.has('security.csrf.token_manager'):
            services.set('security.csrf.token_manager', CsrfTokenManager(services.get('request_stack')))

        request_stack = services.get('request_stack')
        defaults = {
            'assets': lambda: AssetsHelper(self.config.assets_url, self.config.assets_version),
            'form': lambda: FormHelper(services.get('security.csrf.token_manager')),
            'logout_url': lambda: LogoutUrlHelper(services.get('router'), request_stack, self.config.logout_route),
            'request': lambda: RequestHelper(request_stack, self.config.locale),
            'router': lambda: RouterHelper(services.get('router'), request_stack),
            'security': lambda: SecurityHelper(services.get('security.token_storage')),
            'session': lambda: SessionHelper(request_stack),
        }
        for name, factory in defaults.items():
            service_id = f"templating.helper.{name}"
            if not services.has(service_id):
                services.set(service_id, factory())

    def discover_bundles(self):
        src_dir = self.get_src_dir()
        if not os.path.isdir(src_dir):
            return
        for directory in sorted(os.listdir(src_dir)):
            path = os.path.join(src_dir, directory)
            if os.path.isdir(path):
                self.register_bundle(directory, path)

    def register_bundle(self, name, path):
        self.bundles[name] = os.path.abspath(str(path))

    def get_bundle(self, name):
        return self.bundles.get(name)

    def get_project_dir(self):
        return self.project_dir

    def get_root_dir(self):
        return os.path.join(self.project_dir, self.config.app_directory)

    def get_src_dir(self):
        return os.path.join(self.project_dir, self.config.src_directory)

    def get_web_dir(self):
        return os.path.join(self.project_dir, self.config.web_directory)

    def get_cache_dir(self):
        return os.path.join(self.project_dir, self.config.cache_directory, self.environment)

    def get_environment(self):
        return self.environment

    def is_debug(self):
        return self.debug

    def get_container(self):
        return self.container

# End of Part V - Kernel


# Part VI - Pug template engine

class ViewLoader(FileSystemLoader):
    "Jinja2 loader accepting absolute view paths besides names relative to the search path"

    def get_source(self, environment, template):
        if not os.path.isabs(template):
            return super().get_source(environment, template)
        if not os.path.isfile(template):
            raise TemplateNotFound(template)
        with open(template, encoding=self.encoding) as fp:
            contents = fp.read()
        mtime = os.path.getmtime(template)

        def uptodate():
            try:
                return os.path.getmtime(template) == mtime
            except OSError:
                return False

        return contents, template, uptodate


class ViewEnvironment(Environment):
    "Jinja2 environment looking for extended views next to the view extending them first"

    def join_path(self, template, parent):
        if os.path.isabs(parent) and not os.path.isabs(template):
            sibling = os.path.join(os.path.dirname(parent), template)
            if os.path.isfile(sibling):
                return sibling
        return template


@lru_cache(maxsize=None)
def pug_compiler():
    """
    pypugjs Jinja2 compiler whose included files go through the pre_render
    hook as well. pypugjs inlines includes at compile time, reading them
    from disk, so Jinja2 never preprocesses them.
    """
    from pypugjs.ext.jinja import Compiler
    from pypugjs.parser import Parser

    class PugCompiler(Compiler):

        def visitInclude(self, node):
            include_path = self.format_path(node.path)
            basedir = self.options.get('basedir') or '.'
            source_path = self.options.get('source_path')
            if os.path.isabs(include_path):
                path = os.path.join(basedir, include_path.lstrip('/\\'))
            else:
                path = os.path.join(os.path.dirname(source_path) if source_path else basedir, include_path)
                if source_path and not os.path.exists(path):
                    path = os.path.join(basedir, include_path)
            if not os.path.isfile(path):
                raise TemplateNotFound(path)

            with open(path, encoding='utf-8') as fp:
                source = fp.read()
            pre_render = self.options.get('pre_render')
            if pre_render:
                source = pre_render(source)

            block = Parser(source, filename=path).parse()
            self.options['source_path'] = path
            try:
                self.visit(block)
            finally:
                self.options['source_path'] = source_path

    return PugCompiler


class PugExtension(Extension):
    """
    Jinja2 extension compiling Pug sources with pypugjs, after handing them
    to the engine pre_render hook.
    """

    def __init__(self, environment):
        super().__init__(environment)
        from pypugjs.ext.jinja import PyPugJSExtension
        from pypugjs.utils import process

        # pypugjs registers its runtime globals on the environment
        self.pypugjs = PyPugJSExtension(environment)
        self.compile_pug = partial(process, compiler=pug_compiler())
        environment.extend(
            pug_pre_render=None,
            pug_extensions=tuple(default_config.extensions),
            pug_pretty=False,
        )

    def preprocess(self, source, name, filename=None):
        environment = self.environment
        if not name or os.path.splitext(name)[1] not in environment.pug_extensions:
            return source
        if environment.pug_pre_render:
            source = environment.pug_pre_render(source)
        searchpath = getattr(environment.loader, 'searchpath', None)
        options = dict(
            self.pypugjs.options,
            basedir=searchpath[0] if searchpath else '.',
            source_path=filename or name,
            pre_render=environment.pug_pre_render,
            pretty=environment.pug_pretty,
        )
        return self.compile_pug(source, filename=name, **options)


class PugTemplateEngine:
    """
    Renders Pug views of a Kernel through pypugjs and Jinja2.

    Views reach the framework helpers through ``view``: the engine itself,
    which behaves as a mapping of helper names to helper instances
    (``view.assets.getUrl("img/logo.png")``). Bare helper calls such as
    ``asset("img/logo.png")`` are rewritten into that form by pre_render
    before pypugjs compiles the view.
    """

    forbidden_parameters = ('view', 'this')
    helper_names = ['actions', 'assets', 'code', 'form', 'logout_url', 'request',
                    'router', 'security', 'session', 'slots', 'stopwatch', 'translator']
    logger = logger

    def __init__(self, kernel, *helpers):
        self.kernel = kernel
        config = kernel.config
        cache = os.path.join(kernel.get_cache_dir(), 'pug')
        os.makedirs(cache, exist_ok=True)

        app_dir = kernel.get_root_dir()
        assets_directories = [os.path.join(app_dir, config.assets_directory)]
        environment = kernel.get_environment()
        base_dir = self.crawl_directories(kernel.get_src_dir(), app_dir, assets_directories)

        self.options = {
            'asset_directory': assets_directories,
            'base_dir': base_dir,
            'cache': False if environment[:3] == 'dev' else cache,
            'environment': environment,
            'expression_language': config.expression_language,
            'extension': list(config.extensions),
            'output_directory': kernel.get_web_dir(),
            'pre_render': self.pre_render,
            'prettyprint': kernel.is_debug(),
        }
        self.filters = {}
        self.globals = {'random_int': random_int}
        self._environment = None

        services = kernel.get_container()
        self.register_helpers(services, helpers)

        app = AppVariable()
        app.set_debug(kernel.is_debug())
        app.set_environment(environment)
        app.set_request_stack(services.get('request_stack'))
        if services.has('security.token_storage'):
            app.set_token_storage(services.get('security.token_storage'))
        self.share('app', app)

        self.debug(f"Pug views from {base_dir}, cache: {self.options['cache'] or 'disabled'}")

    def debug(self, *args, **kw):
        if self.kernel.is_debug():
            self.logger.setLevel(10)
            self.logger.debug(*args, **kw)

    def crawl_directories(self, src_dir, app_dir, assets_directories):
        """
        Base directory of the views: the templates directory of the first
        bundle having one, else the application one. Every bundle adds its
        assets directory to `assets_directories`.
        """
        config = self.kernel.config
        base_dir = None
        directories = sorted(os.listdir(src_dir)) if os.path.isdir(src_dir) else []
        for directory in directories:
            bundle_dir = os.path.join(src_dir, directory)
            if os.path.isfile(bundle_dir):
                continue
            views = os.path.join(bundle_dir, config.templates_directory)
            if base_dir is None and os.path.isdir(views):
                base_dir = views
            assets_directories.append(os.path.join(bundle_dir, config.assets_directory))

        return base_dir or os.path.join(app_dir, config.templates_directory)

    def register_helpers(self, services, helpers):
        self.helpers = {}
        for helper in self.helper_names:
            service_id = f"templating.helper.{helper}"
            if services.has(service_id):
                instance = services.get(service_id)
                if instance:
                    self.helpers[helper] = instance

        if 'assets' in self.helpers:
            self.helpers['css'] = CssHelper(self.helpers['assets'])
        if 'logout_url' in self.helpers:
            self.helpers['logout'] = self.helpers['logout_url']
        self.helpers['http'] = HttpHelper(
            services.get('request_stack'),
            services.get('router.request_context')
        )

        for helper in helpers:
            self.helpers[helper_name(helper)] = helper

    def pre_render(self, code):
        "Pug code transformation done before pypugjs compiles it"
        return rewrite(code, HELPER_CALLS, self.get_option('expression_language'))

    # Options

    def get_option(self, name):
        if name not in self.options:
            raise InvalidOptionError(name)
        return self.options[name]

    def set_option(self, name, value):
        self.get_option(name)
        self.options[name] = value
        self._environment = None
        return self

    def set_options(self, options):
        for name in options:
            self.get_option(name)
        self.options.update(options)
        self._environment = None
        return self

    def set_custom_options(self, options):
        self.options.update(options)
        self._environment = None
        return self

    def get_extensions(self):
        extensions = self.get_option('extension')
        if isinstance(extensions, str):
            return (extensions,)
        return tuple(extensions)

    # Jinja2 environment

    def get_engine(self):
        "Jinja2 environment compiling the views, built on first use"
        if self._environment is None:
            self._environment = self.build_environment()
        return self._environment

    def build_environment(self):
        searchpath = [self.get_option('base_dir')]
        app_views = os.path.join(self.kernel.get_root_dir(), self.kernel.config.templates_directory)
        if app_views not in searchpath:
            searchpath.append(app_views)

        bytecode_cache = None
        cache = self.get_option('cache')
        if cache:
            os.makedirs(cache, exist_ok=True)
            bytecode_cache = FileSystemBytecodeCache(cache, self.get_cache_pattern())

        environment = ViewEnvironment(
            loader=ViewLoader(searchpath),
            bytecode_cache=bytecode_cache,
            extensions=[PugExtension],
        )
        environment.pug_extensions = self.get_extensions()
        environment.pug_pre_render = self.get_option('pre_render')
        environment.pug_pretty = bool(self.get_option('prettyprint'))
        environment.filters.update(self.filters)
        environment.globals.update(self.globals)
        return environment

    def get_cache_pattern(self):
        "Bytecode file names, changing with every option the compiled views depend on"
        language = self.get_option('expression_language')
        pre_render = self.get_option('pre_render')
        compile_options = (language, bool(self.get_option('prettyprint')), self.get_extensions(),
                           getattr(pre_render, '__qualname__', repr(pre_render)))
        digest = hashlib.sha1(repr(compile_options).encode()).hexdigest()[:8]
        return f"__pug_{language}_{digest}_%s.cache"

    def share(self, name, value):
        "Makes `value` available to every view as `name`"
        self.globals[name] = value
        if self._environment is not None:
            self._environment.globals[name] = value

    def filter(self, name, filter_func):
        self.filters[name] = filter_func
        if self._environment is not None:
            self._environment.filters[name] = filter_func

    def has_filter(self, name):
        return name in self.filters

    def get_filter(self, name):
        return self.filters.get(name)

    # Views

    def get_file_from_name(self, name):
        """
        'file.pug' is looked for in the application templates,
        'Bundle:directory:file.pug' and 'Bundle::file.pug' in the bundle ones.
        """
        parts = name.split(':')
        directory = self.kernel.get_root_dir()
        if len(parts) > 1:
            *subdirectories, name = parts[1:]
            subdirectories = [d for d in subdirectories if d]
            if subdirectories:
                name = os.path.join(*subdirectories, name)
            bundle = self.kernel.get_bundle(parts[0])
            if bundle:
                directory = bundle

        return os.path.join(directory, self.kernel.config.templates_directory, name)

    def render(self, name, parameters=None):
        parameters = dict(parameters or {})
        for forbidden_key in self.forbidden_parameters:
            if forbidden_key in parameters:
                raise ForbiddenParameterError(f'The "{forbidden_key}" key is forbidden.')
        parameters['view'] = self

        filename = self.get_file_from_name(name)
        self.debug(f"Rendering {filename}")
        return self.get_engine().get_template(filename).render(parameters)

    def exists(self, name):
        return os.path.exists(self.get_file_from_name(name))

    def supports(self, name):
        return any(name.endswith(extension) for extension in self.get_extensions())

    def cache_directory(self, directory):
        "Compiles every view under `directory`, returns (success, errors) counts"
        success = 0
        errors = 0
        environment = self.get_engine()
        for root, _, files in sorted(os.walk(directory)):
            for file in sorted(files):
                if not self.supports(file):
                    continue
                path = os.path.join(root, file)
                try:
                    environment.get_template(path)
                    success += 1
                except Exception as exc:
                    errors += 1
                    self.logger.error(f"{path} could not be cached: {exc.__class__.__name__}: {exc}")
        return success, errors

    # Helpers, as a mapping

    def __getitem__(self, name):
        return self.helpers[name]

    def __setitem__(self, name, helper):
        self.helpers[name] = helper

    def __delitem__(self, name):
        del self.helpers[name]

    def __contains__(self, name):
        return name in self.helpers

    def __iter__(self):
        return iter(self.helpers)

    def __len__(self):
        return len(self.helpers)

# End of Part VI - Pug template engine


# Part VII - Cache warming

def cache_templates(engine):
    """
    Compiles the views living next to every assets directory of `engine`.
    Returns (directories, success, errors).
    """
    success = 0
    errors = 0
    directories = []
    templates_root = engine.kernel.config.templates_directory
    for asset_directory in engine.get_option('asset_directory'):
        view_directory = os.path.normpath(os.path.join(asset_directory, '..', templates_root))
        if os.path.isdir(view_directory):
            directories.append(view_directory)
            cached, failed = engine.cache_directory(view_directory)
            success += cached
            errors += failed

    return directories, success, errors


def load_kernel(kernel_path):
    "Imports a kernel given as 'module:attribute' (a Kernel, or a callable returning one)"
    if ":" in kernel_path:
        nmodule, nkernel = kernel_path.split(":")[:2]
    else:
        nmodule, nkernel = kernel_path, "kernel"
    if os.getcwd() not in sys.path:
        sys.path.append(os.getcwd())
    kernel = getattr(importlib.import_module(nmodule), nkernel)
    if not isinstance(kernel, Kernel) and callable(kernel):
        kernel = kernel()
    return kernel


# Provervial main function

def main(argv=None):
    "Warms up the views cache of a project or, alternatively, returns current version."

    import argparse
    parser = argparse.ArgumentParser(
        description='Command line arguments for PugBicchiere')
    parser.add_argument('command', nargs='?', default='publish', choices=['publish'],
                        help="'publish' compiles every view into the cache.")
    parser.add_argument('-k', '--kernel', type=str,
                        default="app:kernel", help="Kernel to load, as module:attribute.")
    parser.add_argument('-V', '--version', action="store_true",
                        help="Outputs PugBicchiere version and quits")
    parser.add_argument('-D', '--debug', action="store_true",
                        help="Runs in debug mode")

    args = parser.parse_args(argv)

    if args.version:
        print(f"\nPugBicchiere version {get_version()}\n")
        return 0

    if args.debug:
        logger.setLevel(10)

    try:
        kernel = load_kernel(args.kernel)
        logger.info(f"kernel: {args.kernel} ({kernel.get_project_dir()})")
    except (ImportError, AttributeError) as exc:
        logger.error(f"Kernel {args.kernel} can't be loaded: {repr(exc)}.\nQuitting.\n")
        return 1

    services = kernel.get_container()
    if services.has('templating.engine.pug'):
        engine = services.get('templating.engine.pug')
    else:
        engine = PugTemplateEngine(kernel)

    directories, success, errors = cache_templates(engine)
    count = len(directories)
    print(f"{count} {'directory' if count == 1 else 'directories'} scanned: {', '.join(directories)}.")
    print(f"{success} templates cached.")
    print(f"{errors} templates failed to be cached.")
    return 0


if __name__ == '__main__':
    sys.exit(main())

import itertools
import logging
import inspect
import operator
import os
import sys
import threading
import time
import typing
import unittest


__all__ = ["Mock", "Controller", "MockTestCase", "Count", "LockDomain",
           "call", "in_order", "expect", "current_controller",
           "is_unexpected_call", "UsageError", "SignatureError",
           "UnexpectedCallError", "MissingCallError", "CallCancelledError",
           "ANY", "ARGS", "KWARGS", "SAME", "CONTAINS", "MATCH"]


ERROR_PREFIX = "[mockledger] "

log = logging.getLogger("mockledger")


# --------------------------------------------------------------------
# Exceptions

class UsageError(RuntimeError):
    """Raised when the test itself is malformed.

    Usage errors are never converted into test failures.  They always
    propagate to the outermost caller.
    """


class SignatureError(UsageError, TypeError):
    """Raised when a call doesn't conform to the interface method."""


class UnexpectedCallError(AssertionError):
    """Raised when a dispatched call matches no outstanding expectation.

    @ivar mock: The mock object which received the call.
    @ivar method: Name of the method called.
    @ivar call_args: Positional arguments of the call.
    @ivar call_kwargs: Keyword arguments of the call.
    @ivar related: Expectation records for the same method which were live
                   when the call happened, in declaration order.
    @ivar sessions: Controllers the failure was reported to.
    """

    def __init__(self, mock, method, args, kwargs, related):
        self.mock = mock
        self.method = method
        self.call_args = args
        self.call_kwargs = kwargs
        self.related = related
        self.sessions = []
        message = [ERROR_PREFIX + "Unexpected call: %s"
                   % format_call(mock, method, args, kwargs)]
        for record in related:
            lines = str(record).splitlines()
            message.append("(*) See " + lines.pop(0))
            message.extend(lines)
        super(UnexpectedCallError, self).__init__(os.linesep.join(message))


class MissingCallError(AssertionError):
    """Reported by a checkpoint when a record's count is out of bounds."""

    def __init__(self, record, actual):
        self.record = record
        self.expected = record.constraint
        self.actual = actual
        message = [str(record.descriptor),
                   "- " + describe_count(self.expected, actual)]
        super(MissingCallError, self).__init__(os.linesep.join(message))


class CallCancelledError(RuntimeError):
    """Raised when dispatching in a cancelled verification session."""

    def __init__(self, controller, cause):
        self.controller = controller
        self.cause = cause
        super(CallCancelledError, self).__init__(
            ERROR_PREFIX + "Call aborted, session %s is cancelled: %s"
            % (controller, cause))


def is_unexpected_call(error):
    """Return true if the given failure was caused by an unexpected call.

    The whole C{__cause__}/C{__context__} chain is considered, so an
    unexpected call wrapped by the code under test is still recognized.
    """
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, UnexpectedCallError):
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False


def describe_count(count, actual):
    if count.min == count.max:
        return ("Expected %d time(s), seen %d time(s)."
                % (count.min, actual))
    if count.max is None:
        return ("Expected at least %d time(s), seen %d time(s)."
                % (count.min, actual))
    if count.min is None:
        return ("Expected at most %d time(s), seen %d time(s)."
                % (count.max, actual))
    return ("Expected %d to %d time(s), seen %d time(s)."
            % (count.min, count.max, actual))


# --------------------------------------------------------------------
# Count constraint.

class Count(object):
    """Inclusive range of integers with optional ends.

    Both C{min} and C{max} may be None independently, meaning that side
    of the range is unbounded.  Instances are immutable.
    """

    __slots__ = ("_min", "_max")

    def __init__(self, min=None, max=None):
        for value in (min, max):
            if value is not None and value < 0:
                raise ValueError("Count bounds can't be negative: %r"
                                 % (value,))
        if min is not None and max is not None and min > max:
            raise ValueError("Count minimum %d is greater than maximum %d"
                             % (min, max))
        self._min = min
        self._max = max

    @classmethod
    def exactly(cls, n):
        return cls(n, n)

    @classmethod
    def unbounded(cls):
        return cls()

    @property
    def min(self):
        return self._min

    @property
    def max(self):
        return self._max

    def with_min(self, min):
        return Count(min, self._max)

    def with_max(self, max):
        return Count(self._min, max)

    def without_min(self):
        return Count(None, self._max)

    def without_max(self):
        return Count(self._min, None)

    def contains(self, n):
        return ((self._min is None or n >= self._min) and
                (self._max is None or n <= self._max))

    def reached(self, n):
        """Return true if C{n} is already at (or past) the upper bound."""
        return self._max is not None and n >= self._max

    def is_empty(self):
        """Return true if neither end is bounded."""
        return self._min is None and self._max is None

    def __eq__(self, other):
        if not isinstance(other, Count):
            return NotImplemented
        return self._min == other._min and self._max == other._max

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __hash__(self):
        return hash((Count, self._min, self._max))

    def __repr__(self):
        return "Count(%r, %r)" % (self._min, self._max)

    def __str__(self):
        if self._min == self._max:
            if self._min is None:
                return ".."
            return "%d" % self._min
        if self._min is None:
            return "..%d" % self._max
        if self._max is None:
            return "%d.." % self._min
        return "%d..%d" % (self._min, self._max)


DEFAULT_COUNT = Count.exactly(1)


class AtomicCounter(object):
    """Integer supporting linearizable load and compare-and-swap."""

    def __init__(self, value=0):
        self._value = value
        self._lock = threading.Lock()

    def load(self):
        return self._value

    def compare_and_swap(self, expected, new):
        with self._lock:
            if self._value != expected:
                return False
            self._value = new
            return True


# --------------------------------------------------------------------
# Argument patterns.

class SpecialArgument(object):
    """Base for special arguments for matching parameters."""

    def __init__(self, object=None):
        self.object = object

    def __repr__(self):
        if self.object is None:
            return self.__class__.__name__
        else:
            return "%s(%r)" % (self.__class__.__name__, self.object)

    def accepts(self, value):
        return True

    def __eq__(self, other):
        return type(other) == type(self) and self.object == other.object


class ANY(SpecialArgument):
    """Matches any single argument."""

ANY = ANY()


class ARGS(SpecialArgument):
    """Matches zero or more positional arguments."""

ARGS = ARGS()


class KWARGS(SpecialArgument):
    """Matches zero or more keyword arguments."""

KWARGS = KWARGS()


class SAME(SpecialArgument):

    def accepts(self, value):
        return self.object is value

    def __eq__(self, other):
        return type(other) == type(self) and self.object is other.object


class CONTAINS(SpecialArgument):

    def accepts(self, value):
        try:
            value.__contains__
        except AttributeError:
            try:
                iter(value)
            except TypeError:
                # Neither iterable nor a container, so the 'in' test
                # below would blow up.
                return False
        return self.object in value


class MATCH(SpecialArgument):
    """Matches values for which the given predicate returns true."""

    def __init__(self, predicate, description=None):
        super(MATCH, self).__init__(predicate)
        self.description = description

    def accepts(self, value):
        return bool(self.object(value))

    def __repr__(self):
        if self.description is not None:
            return "MATCH(%s)" % self.description
        return "MATCH(%s)" % getattr(self.object, "__name__", self.object)


def accepts_value(expected, value):
    if isinstance(expected, SpecialArgument):
        return expected.accepts(value)
    return expected == value


def match_params(args1, kwargs1, args2, kwargs2):
    """Match the two sets of parameters, considering the special ARGS.

    C{args1} and C{kwargs1} are the expected parameters, possibly holding
    special arguments, and C{args2} and C{kwargs2} the actual ones.
    """
    has_args = any(arg is ARGS for arg in args1)
    has_kwargs = any(arg is KWARGS for arg in args1)

    if has_kwargs:
        args1 = [arg1 for arg1 in args1 if arg1 is not KWARGS]
    elif len(kwargs1) != len(kwargs2):
        return False

    if not has_args and len(args1) != len(args2):
        return False

    # Either we have the same number of kwargs, or unknown keywords are
    # accepted (KWARGS was used), so check just the ones in kwargs1.
    for key, arg1 in kwargs1.items():
        if key not in kwargs2:
            return False
        if not accepts_value(arg1, kwargs2[key]):
            return False

    if not has_args:
        for arg1, arg2 in zip(args1, args2):
            if not accepts_value(arg1, arg2):
                return False
        return True

    # ARGS may swallow any number of values, so walk the expected
    # arguments keeping which prefixes of the actual ones were consumed.
    reachable = [True] + [False] * len(args2)
    for arg1 in args1:
        if arg1 is ARGS:
            for j in range(1, len(args2) + 1):
                reachable[j] = reachable[j] or reachable[j-1]
        else:
            for j in range(len(args2), 0, -1):
                reachable[j] = (reachable[j-1] and
                                accepts_value(arg1, args2[j-1]))
            reachable[0] = False
        if not any(reachable):
            return False
    return reachable[-1]


class ArgumentPattern(object):
    """Pattern accepting calls whose parameters match the given ones."""

    def __init__(self, args=(), kwargs=None):
        self.args = tuple(args)
        self.kwargs = dict(kwargs or {})

    def accepts(self, args, kwargs):
        return match_params(self.args, self.kwargs, args, kwargs)

    def __str__(self):
        return format_params(self.args, self.kwargs)


def format_params(args, kwargs):
    params = [repr(x) for x in args]
    for pair in sorted(kwargs.items()):
        params.append("%s=%r" % pair)
    return "(%s)" % ", ".join(params)


def format_call(mock, method, args, kwargs):
    return "%s.%s%s" % (mock_name(mock), method, format_params(args, kwargs))


# --------------------------------------------------------------------
# Method registry.

class MethodSignature(object):
    """Signature of one method in an interface type.

    @ivar name: Method name.
    @ivar signature: C{inspect.Signature} without the self parameter.
    @ivar hints: Resolved type hints, including C{"return"} if annotated.
    """

    def __init__(self, name, signature, hints=None):
        self.name = name
        self.signature = signature
        self.hints = hints or {}

    @property
    def arity(self):
        return len([param for param in self.signature.parameters.values()
                    if param.kind not in (param.VAR_POSITIONAL,
                                          param.VAR_KEYWORD)])

    def _raise(self, message):
        raise SignatureError(ERROR_PREFIX + "Specification is %s%s: %s" %
                             (self.name, self.signature, message))

    def bind(self, args, kwargs):
        try:
            return self.signature.bind(*args, **kwargs)
        except TypeError as e:
            self._raise(str(e))

    def check(self, args, kwargs):
        """Raise SignatureError if the call doesn't conform to the method."""
        bound = self.bind(args, kwargs)
        parameters = self.signature.parameters
        for name, value in bound.arguments.items():
            hint = self.hints.get(name)
            kind = parameters[name].kind
            if kind == inspect.Parameter.VAR_POSITIONAL:
                values = value
            elif kind == inspect.Parameter.VAR_KEYWORD:
                values = value.values()
            else:
                values = (value,)
            for item in values:
                if not conforms(item, hint):
                    self._raise("%r must be %s, got %s" %
                                (name, hint.__name__, type(item).__name__))

    def check_result(self, value):
        hint = self.hints.get("return")
        if not conforms(value, hint):
            self._raise("result must be %s, got %s" %
                        (hint.__name__, type(value).__name__))


def conforms(value, hint):
    """Check value against a plain class annotation.

    Anything other than a plain class (typing constructs, strings which
    couldn't be resolved) is accepted without checking.
    """
    if not isinstance(hint, type):
        return True
    if hint is float and isinstance(value, int):
        return True
    if hint is complex and isinstance(value, (int, float)):
        return True
    return isinstance(value, hint)


def build_method_table(spec):
    """Return a {name: MethodSignature} dict for public methods of spec."""
    table = {}
    for name in dir(spec):
        if name.startswith("_"):
            continue
        raw = inspect.getattr_static(spec, name)
        if isinstance(raw, staticmethod):
            func, has_self = raw.__func__, False
        elif isinstance(raw, classmethod):
            func, has_self = raw.__func__, True
        elif inspect.isfunction(raw):
            func, has_self = raw, True
        else:
            continue
        signature = inspect.signature(func)
        if has_self:
            parameters = list(signature.parameters.values())[1:]
            signature = signature.replace(parameters=parameters)
        try:
            hints = typing.get_type_hints(func)
        except (NameError, TypeError, AttributeError):
            hints = {}
        table[name] = MethodSignature(name, signature, hints)
    return table


class MethodRegistry(object):
    """Cache of method tables keyed by interface type.

    Tables are built once per type on first lookup, and never change
    afterwards.  Lookups are safe from any thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tables = {}

    def methods(self, spec):
        if not isinstance(spec, type):
            raise UsageError(ERROR_PREFIX + "%r is not an interface type"
                             % (spec,))
        table = self._tables.get(spec)
        if table is None:
            with self._lock:
                table = self._tables.get(spec)
                if table is None:
                    table = self._tables[spec] = build_method_table(spec)
                    log.debug("Built method table for %s: %s",
                              spec.__name__, ", ".join(sorted(table)))
        return table

    def method(self, spec, name):
        signature = self.methods(spec).get(name)
        if signature is None:
            raise UsageError(ERROR_PREFIX + "Type %s has no method %s"
                             % (spec.__name__, name))
        return signature


default_registry = MethodRegistry()


# --------------------------------------------------------------------
# Declaration site and object naming.

class LineTag(object):

    def __init__(self, filename, lineno):
        self.filename = filename
        self.lineno = lineno

    def __str__(self):
        parts = self.filename.replace(os.sep, "/").split("/")
        return "%s:%d" % ("/".join(parts[-2:]), self.lineno)

    def __repr__(self):
        return "LineTag(%r, %r)" % (self.filename, self.lineno)


def caller_line(depth=0):
    """Return a LineTag for the frame C{depth} levels above the caller."""
    try:
        frame = sys._getframe(depth+1)
    except ValueError:
        return LineTag("<unknown>", 0)
    return LineTag(frame.f_code.co_filename, frame.f_lineno)


def find_object_name(obj, depth=0):
    """Try to detect how the object is named on a previous scope."""
    try:
        frame = sys._getframe(depth+1)
    except ValueError:
        return None
    for name, frame_obj in frame.f_locals.items():
        if frame_obj is obj:
            return name
    self = frame.f_locals.get("self")
    if self is not None:
        try:
            items = list(vars(self).items())
        except TypeError:
            pass
        else:
            for name, self_obj in items:
                if self_obj is obj:
                    return name
    return None


def mock_name(mock):
    if mock.__mocker_name__ is not None:
        return mock.__mocker_name__
    return "<%s mock>" % mock.__mocker_spec__.__name__


# --------------------------------------------------------------------
# Expectations.

_sequence = itertools.count()
_sequence_lock = threading.Lock()


def next_sequence():
    with _sequence_lock:
        return next(_sequence)


class ExpectationDescriptor(object):
    """Identity of one declared expectation.

    Descriptors compare by identity, so declaring an expectation twice
    with equal parameters still yields two distinct expectations.
    """

    def __init__(self, mock, method, line_tag):
        self.mock = mock
        self.method = method
        self.line_tag = line_tag

    def __str__(self):
        return "%s.%s declared at %s" % (mock_name(self.mock), self.method,
                                         self.line_tag)


class ExpectationRecord(object):
    """Run-time state of one expectation within one verification session.

    @ivar after: Records which must have been called at least once before
                 this one may match.
    @ivar sequence: Registration order, used to pick between candidates.
    @ivar satisfied: Set by the checkpoint which verified this record.
    """

    def __init__(self, descriptor, pattern, constraint, after=(),
                 behavior=None, sequence=0):
        self.descriptor = descriptor
        self.pattern = pattern
        self.constraint = constraint
        self.after = list(after)
        self.behavior = behavior
        self.sequence = sequence
        self.satisfied = False
        self._counter = AtomicCounter()

    @property
    def calls(self):
        return self._counter.load()

    def is_ready(self):
        for record in self.after:
            if record.calls == 0:
                return False
        return True

    def is_candidate(self, args, kwargs):
        return (self.pattern.accepts(args, kwargs) and self.is_ready() and
                not self.constraint.reached(self.calls))

    def register_call(self):
        """Count one more match, unless the maximum was already reached.

        Returns true if the call was counted.
        """
        while True:
            calls = self._counter.load()
            if self.constraint.reached(calls):
                return False
            if self._counter.compare_and_swap(calls, calls + 1):
                return True

    def run(self, args, kwargs):
        if self.behavior is None:
            return None
        return self.behavior(*args, **kwargs)

    def verify(self):
        """Return a MissingCallError if the count is out of bounds."""
        calls = self.calls
        self.satisfied = self.constraint.contains(calls)
        if not self.satisfied:
            return MissingCallError(self, calls)
        return None

    def __str__(self):
        descriptor = self.descriptor
        text = "%s.%s%s declared at %s" % (mock_name(descriptor.mock),
                                           descriptor.method, self.pattern,
                                           descriptor.line_tag)
        if not self.constraint.is_empty():
            text += ", called %d of %s times" % (self.calls, self.constraint)
        lines = [text]
        for record in self.after:
            lines.append("    Expected to be called after %s"
                         % record.descriptor)
        return os.linesep.join(lines)


class Expectation(object):
    """Something that may be declared against a controller."""

    def setup(self, controller):
        raise NotImplementedError

    def members(self):
        """Return the individual expected calls composing this one."""
        raise NotImplementedError


class ExpectedCall(Expectation):
    """Builder for one expected call on a mock object.

    Instances are created by L{call()} or L{expect}, and configured by
    chaining, as in::

        call(sorter, "less", 1, 0).returns(True).times(2)

    Configuration is copied into the session's record when the call is
    declared, so changes made after declaration only affect later
    sessions.
    """

    def __init__(self, descriptor, signature, pattern):
        self.descriptor = descriptor
        self.signature = signature
        self.pattern = pattern
        self.behavior = None
        self.locks = []
        self._count = None
        self._after = []

    @property
    def constraint(self):
        if self._count is None:
            return DEFAULT_COUNT
        return self._count

    @property
    def prerequisites(self):
        return self._after[:]

    def returns(self, value):
        """Make the call return the given value.

        @param value: Object to be returned.  It must conform to the
                      return annotation of the method, if any.
        """
        self.signature.check_result(value)
        self.behavior = lambda *args, **kwargs: value
        return self

    def raises(self, exception):
        """Make the call raise the given exception.

        @param exception: Class or instance of exception to be raised.
        """
        def raise_exception(*args, **kwargs):
            raise exception
        self.behavior = raise_exception
        return self

    def calls(self, func):
        """Make the call run the given function with its arguments.

        The result of the function will be used as the call result.
        """
        if not callable(func):
            raise UsageError(ERROR_PREFIX + "%r is not callable" % (func,))
        self.behavior = func
        return self

    def matching(self, pattern):
        """Replace the argument pattern by one with an accepts() method.

        @param pattern: Object with an C{accepts(args, kwargs)} method,
                        and a readable C{str()}.
        """
        if not callable(getattr(pattern, "accepts", None)):
            raise UsageError(ERROR_PREFIX + "%r has no accepts() method"
                             % (pattern,))
        self.pattern = pattern
        return self

    def times(self, n):
        self._count = Count.exactly(n)
        return self

    def at_least(self, n):
        self._count = (self._count or Count()).with_min(n)
        return self

    def at_most(self, n):
        self._count = (self._count or Count()).with_max(n)
        return self

    def any_times(self):
        self._count = Count.unbounded()
        return self

    def count(self, min, max=False):
        """Call must happen between min and max times.

        @param min: Minimum number of times that the call must happen.
        @param max: Maximum number of times that the call may happen.  If
                    not given, it defaults to the same value of the C{min}
                    parameter.  If set to None, there is no upper limit.
        """
        if max is False:
            max = min
        self._count = Count(min, max)
        return self

    def after(self, *others):
        """Call may only match once all calls in others were seen."""
        for other in others:
            for member in other.members():
                if member.descriptor not in self._after:
                    self._after.append(member.descriptor)
        return self

    def before(self, *others):
        """Calls in others may only match once this call was seen."""
        for other in others:
            for member in other.members():
                member.after(self)
        return self

    def uses(self, *domains):
        """Hold the given lock domains while checked atomically."""
        for domain in domains:
            if not isinstance(domain, LockDomain):
                raise UsageError(ERROR_PREFIX + "%r is not a LockDomain"
                                 % (domain,))
            self.locks.append(domain)
        return self

    def setup(self, controller):
        return self.descriptor.mock.__mocker_declare__(controller, self)

    def members(self):
        return [self]

    def __repr__(self):
        return "<ExpectedCall %s>" % self.descriptor


class InOrder(Expectation):
    """Composite of expected calls which must happen in sequence."""

    def __init__(self, calls):
        self._calls = []
        for expectation in calls:
            self._calls.extend(expectation.members())
        for previous, current in zip(self._calls, self._calls[1:]):
            current.after(previous)

    def setup(self, controller):
        return [member.setup(controller) for member in self._calls]

    def members(self):
        return self._calls[:]


def _new_call(mock, method, args, kwargs, depth):
    if not isinstance(mock, Mock):
        raise UsageError(ERROR_PREFIX + "%r is not a mock object" % (mock,))
    if mock.__mocker_name__ is None:
        mock.__mocker_name__ = find_object_name(mock, depth+1)
    signature = mock.__mocker_registry__.method(mock.__mocker_spec__,
                                                method)
    if not any(arg is ARGS or arg is KWARGS for arg in args):
        signature.bind(args, kwargs)
    descriptor = ExpectationDescriptor(mock, method, caller_line(depth+1))
    return ExpectedCall(descriptor, signature, ArgumentPattern(args, kwargs))


def call(mock, method, *args, **kwargs):
    """Return an expected call of method on mock with the given arguments.

    Arguments may be plain values, compared by equality, or special
    arguments such as L{ANY} or L{ARGS}.  The expectation must still be
    declared against a controller, for instance with
    L{Controller.expect()}.
    """
    return _new_call(mock, method, args, kwargs, 1)


def in_order(*calls):
    """Return an expectation declaring the given calls in sequence.

    Each call is made to happen after the previous one.
    """
    return InOrder(calls)


class expect(object):
    """This is a simple helper that allows a different call-style.

    With this class one can comfortably declare calls with the mock's
    own method syntax.  For instance::

        expect(sorter).less(1, 0).returns(True)

    Is the same as::

        call(sorter, "less", 1, 0).returns(True)

    """

    def __init__(self, mock):
        self._mock = mock

    def __getattr__(self, method):
        if method.startswith("_"):
            raise AttributeError(method)
        def declare(*args, **kwargs):
            return _new_call(self._mock, method, args, kwargs, 1)
        return declare


# --------------------------------------------------------------------
# Mock object.

class Mock(object):
    """Substitute for an implementation of the given interface type.

    Calling any public method of the interface on the mock dispatches the
    call against expectations declared for it.  Internal state is kept in
    C{__mocker_*__} attributes so that it never clashes with the names in
    the interface.

    @param spec: Interface type.  Its public methods form the method
                 registry of the mock.
    @param name: Name used in diagnostics.  Guessed from the variable
                 name used when the first expectation is created.
    @param type: Type reported by C{__class__}, so that C{isinstance()}
                 works.  Defaults to C{spec}.
    @param registry: MethodRegistry to look the interface up in.
    """

    def __init__(self, spec, name=None, type=None, registry=None):
        if registry is None:
            registry = default_registry
        self.__mocker_spec__ = spec
        self.__mocker_name__ = name
        self.__mocker_type__ = type or spec
        self.__mocker_registry__ = registry
        self.__mocker_methods__ = registry.methods(spec)
        self.__mocker_lock__ = threading.Lock()
        self.__mocker_expected__ = {} # {controller: {descriptor: record}}

    @property
    def __class__(self):
        return self.__mocker_type__

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return MockMethod(self, name)

    def __repr__(self):
        return "<Mock %s>" % mock_name(self)

    def __mocker_record__(self, controller, descriptor):
        with self.__mocker_lock__:
            return self.__mocker_expected__.get(controller, {}).get(descriptor)

    def __mocker_records__(self, controller):
        with self.__mocker_lock__:
            records = list(self.__mocker_expected__.get(controller, {})
                           .values())
        records.sort(key=operator.attrgetter("sequence"))
        return records

    def __mocker_declare__(self, controller, expected):
        descriptor = expected.descriptor
        if descriptor.mock is not self:
            raise UsageError(ERROR_PREFIX + "%s doesn't belong to %r"
                             % (descriptor, self))
        if controller.is_done():
            raise UsageError(ERROR_PREFIX + "Can't declare %s, session %s "
                             "is already finished" % (descriptor, controller))
        existing = self.__mocker_record__(controller, descriptor)
        if existing is not None:
            return existing

        after = []
        for dependency in expected.prerequisites:
            record = dependency.mock.__mocker_record__(controller, dependency)
            if record is None:
                raise UsageError(ERROR_PREFIX + "Expected call %s should be "
                                 "declared before %s" % (dependency,
                                                         descriptor))
            after.append(record)

        def insert():
            with self.__mocker_lock__:
                records = self.__mocker_expected__.setdefault(controller, {})
                record = records.get(descriptor)
                if record is None:
                    record = ExpectationRecord(descriptor, expected.pattern,
                                               expected.constraint, after,
                                               expected.behavior,
                                               next_sequence())
                    records[descriptor] = record
                    log.debug("Declared %s in session %s", record, controller)
                return record

        return controller.add_mock(self, insert)

    def __mocker_dispatch__(self, method, args=(), kwargs=None,
                            controller=None):
        """Match the call against live expectations and run the winner.

        If no controller is given and one is bound to the current thread,
        only its expectations are considered.  Otherwise expectations of
        every unfinished and uncancelled session are.

        A call matching nothing is reported to the sessions considered
        before UnexpectedCallError is raised, so it isn't lost when the
        code under test catches the error.
        """
        if kwargs is None:
            kwargs = {}
        signature = self.__mocker_methods__.get(method)
        if signature is None:
            raise UsageError(ERROR_PREFIX + "Type %s has no method %s"
                             % (self.__mocker_spec__.__name__, method))
        signature.check(args, kwargs)

        if controller is None:
            controller = current_controller()
        if controller is not None:
            cause = controller.cancellation()
            if cause is not None:
                controller.reporter.fatal(CallCancelledError(controller,
                                                             cause))

        matched = None
        with self.__mocker_lock__:
            related = []
            candidates = []
            sessions = []
            for session, records in self.__mocker_expected__.items():
                if controller is not None and session is not controller:
                    continue
                if session.is_done():
                    continue
                if controller is None and session.is_cancelled():
                    continue
                sessions.append(session)
                for record in records.values():
                    if record.descriptor.method != method:
                        continue
                    related.append(record)
                    if record.is_candidate(args, kwargs):
                        candidates.append(record)
            candidates.sort(key=operator.attrgetter("sequence"))
            for record in candidates:
                if record.register_call():
                    matched = record
                    break
            else:
                related.sort(key=operator.attrgetter("sequence"))

        if matched is None:
            error = UnexpectedCallError(self, method, args, kwargs, related)
            if controller is not None:
                sessions = [controller]
            for session in sessions:
                session.report_unexpected(error)
            raise error

        log.debug("Matched %s with %s", format_call(self, method, args,
                                                     kwargs), matched)
        return matched.run(args, kwargs)

    def __mocker_checkpoint__(self, controller):
        """Verify and discard the records of the given session.

        Returns a list with one MissingCallError per unmet record.
        """
        failures = []
        with self.__mocker_lock__:
            records = self.__mocker_expected__.pop(controller, {})
            for record in sorted(records.values(),
                                 key=operator.attrgetter("sequence")):
                failure = record.verify()
                if failure is not None:
                    failures.append(failure)
        return failures


class MockMethod(object):

    def __init__(self, mock, name):
        self.mock = mock
        self.name = name

    def __call__(self, *args, **kwargs):
        return self.mock.__mocker_dispatch__(self.name, args, kwargs)

    def __repr__(self):
        return "<MockMethod %s.%s>" % (mock_name(self.mock), self.name)


# --------------------------------------------------------------------
# Locking.

_lock_order = itertools.count()


class LockDomain(object):
    """Exclusive resource which atomic checks may hold.

    Every domain gets a unique C{order} at construction time, which
    defines the single order in which any set of domains is acquired.
    Domains are re-entrant for the thread holding them.
    """

    def __init__(self, name=None):
        with _sequence_lock:
            self.order = next(_lock_order)
        self.name = name
        self._lock = threading.RLock()

    def acquire(self, blocking=True, timeout=-1):
        return self._lock.acquire(blocking, timeout)

    def release(self):
        self._lock.release()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, type, value, traceback):
        self.release()
        return False

    def __repr__(self):
        return "<LockDomain %s #%d>" % (self.name, self.order)


class LockSet(object):
    """Acquire several lock domains without risking deadlocks.

    Domains are deduplicated, then acquired in ascending C{order} and
    released in the reverse order.
    """

    def __init__(self, domains):
        unique = {}
        for domain in domains:
            unique[id(domain)] = domain
        self._domains = sorted(unique.values(),
                               key=operator.attrgetter("order"))

    @property
    def domains(self):
        return self._domains[:]

    def __enter__(self):
        acquired = []
        try:
            for domain in self._domains:
                domain.acquire()
                acquired.append(domain)
        except BaseException:
            for domain in reversed(acquired):
                domain.release()
            raise
        return self

    def __exit__(self, type, value, traceback):
        for domain in reversed(self._domains):
            domain.release()
        return False


# --------------------------------------------------------------------
# Failure reporting.

class Reporter(object):
    """Collects failures reported during verification.

    This is the hook between controllers and the test harness.  Subclasses
    may forward failures elsewhere, as long as C{fatal()} raises.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._failures = []

    def error(self, failure):
        """Record a failure without aborting."""
        with self._lock:
            self._failures.append(failure)
        log.warning("%s", failure)

    def fatal(self, failure):
        """Record a failure and abort by raising it."""
        self.error(failure)
        raise failure

    def failures(self):
        with self._lock:
            return self._failures[:]

    def check(self):
        """Raise AssertionError describing all failures, if any."""
        failures = self.failures()
        if failures:
            message = [ERROR_PREFIX + "Verification failed:", ""]
            for failure in failures:
                lines = str(failure).splitlines()
                message.append("=> " + lines.pop(0))
                message.extend(" " + line for line in lines)
                message.append("")
            raise AssertionError(os.linesep.join(message))


# --------------------------------------------------------------------
# Controller.

_local = threading.local()


def _bound_controllers():
    stack = getattr(_local, "controllers", None)
    if stack is None:
        stack = _local.controllers = []
    return stack


def _unbind(controller):
    stack = _bound_controllers()
    for i in range(len(stack) - 1, -1, -1):
        if stack[i] is controller:
            del stack[i]
            break


def current_controller():
    """Return the controller bound to the running thread, or None."""
    stack = _bound_controllers()
    if stack:
        return stack[-1]
    return None


class ActiveContext(object):

    def __init__(self, controller):
        self._controller = controller

    def __enter__(self):
        _bound_controllers().append(self._controller)
        return self._controller

    def __exit__(self, type, value, traceback):
        _unbind(self._controller)
        return False


class During(object):

    def __init__(self, controller, exercise):
        self._controller = controller
        self._exercise = exercise

    def expect(self, *expectations):
        return self._controller.atomic_check(self._exercise, *expectations)


class Controller(object):
    """Verification session owning the expectations declared against it.

    A typical session looks like::

        controller = Controller()
        sorter = Mock(Sorter)
        controller.expect(call(sorter, "length").returns(3))
        with controller:
            assert sorter.length() == 3

    Leaving the 'with' block finishes the session, checking that every
    expectation was met.  Blocks of code may also be checked atomically
    against their own expectations::

        controller.during(lambda: sort(sorter)).expect(in_order(
            call(sorter, "length").returns(3),
            call(sorter, "less", 1, 0).returns(True),
        ))

    @param name: Name used in diagnostics.
    @param reporter: Reporter receiving failures.  A new L{Reporter} by
                     default.
    @param timeout: Seconds after which calls dispatched in this session
                    are aborted.
    """

    def __init__(self, name=None, reporter=None, timeout=None):
        if reporter is None:
            reporter = Reporter()
        self.name = name
        self.reporter = reporter
        self._lock = threading.Lock()
        self._mocks = {}
        self._unexpected = []
        self._done = False
        self._exclusive = LockDomain("session %s" % name)
        self._cancelled = threading.Event()
        self._cause = None
        self._deadline = None
        if timeout is not None:
            self._deadline = time.monotonic() + timeout

    def __repr__(self):
        return "<Controller %s>" % self

    def __str__(self):
        if self.name is not None:
            return str(self.name)
        return "0x%x" % id(self)

    def is_done(self):
        return self._done

    def cancel(self, cause=None):
        """Abort any call dispatched in this session from now on."""
        if cause is None:
            cause = RuntimeError("session cancelled")
        self._cause = cause
        self._cancelled.set()

    def cancellation(self):
        """Return the cancellation cause, or None if not cancelled."""
        if self._cancelled.is_set():
            return self._cause
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return TimeoutError("session deadline exceeded")
        return None

    def is_cancelled(self):
        return self.cancellation() is not None

    def failures(self):
        return self.reporter.failures()

    def mocks(self):
        with self._lock:
            return list(self._mocks)

    def add_mock(self, mock, declare):
        """Register mock as touched, running declare() atomically with it.

        This method is used internally by mock objects, and shouldn't be
        needed on normal usage.
        """
        with self._lock:
            if self._done:
                raise UsageError(ERROR_PREFIX + "Session %s is already "
                                 "finished" % self)
            result = declare()
            self._mocks[mock] = None
            return result

    def report_unexpected(self, error):
        """Report an UnexpectedCallError dispatched in this session.

        This method is used internally by mock objects, and shouldn't be
        needed on normal usage.
        """
        with self._lock:
            self._unexpected.append(error)
            error.sessions.append(self)
        self.reporter.error(error)

    def expect(self, *expectations):
        """Declare the given expectations in this session.

        Returns the records created, in declaration order.
        """
        records = []
        for expectation in expectations:
            result = expectation.setup(self)
            if isinstance(result, list):
                records.extend(result)
            else:
                records.append(result)
        return records

    def checkpoint(self):
        """Verify every expectation declared so far, and discard them.

        All records are checked, and each unmet one is reported as a
        separate MissingCallError.  The failures are also returned.

        Declarations made concurrently land either before the checkpoint,
        and are checked by it, or after it, and are kept.
        """
        failures = []
        with self._lock:
            mocks = list(self._mocks)
            self._mocks.clear()
            for mock in mocks:
                failures.extend(mock.__mocker_checkpoint__(self))
        for failure in failures:
            self.reporter.error(failure)
        log.debug("Checkpoint of session %s: %d mock(s), %d failure(s)",
                  self, len(mocks), len(failures))
        return failures

    def atomic_check(self, exercise, *expectations):
        """Declare expectations, run exercise and checkpoint, atomically.

        The session's own lock domain and every domain named by the
        expectations are held throughout.  An UnexpectedCallError raised
        by exercise is reported rather than propagated, and so are the
        ones exercise caught itself.  Any other error is propagated
        unchanged once the checkpoint is done and the locks are released.

        Returns the failures reported by this check.
        """
        if self._done:
            raise UsageError(ERROR_PREFIX + "Session %s is already finished"
                             % self)
        domains = [self._exclusive]
        for expectation in expectations:
            for member in expectation.members():
                domains.extend(member.locks)
        with LockSet(domains):
            self.expect(*expectations)
            with self._lock:
                start = len(self._unexpected)
            try:
                with self.active():
                    exercise()
            except UnexpectedCallError as error:
                if self not in error.sessions:
                    self.report_unexpected(error)
            finally:
                with self._lock:
                    failures = self._unexpected[start:]
                failures.extend(self.checkpoint())
        return failures

    def during(self, exercise):
        """Return a helper for C{during(exercise).expect(...)} checks."""
        return During(self, exercise)

    def finish(self):
        """Forbid new expectations, then checkpoint.

        Finishing an already finished session is harmless.
        """
        with self._lock:
            self._done = True
        log.debug("Finishing session %s", self)
        return self.checkpoint()

    def verify(self):
        """Raise AssertionError if any failure was reported."""
        self.reporter.check()

    def active(self):
        """Return a context binding this session to the running thread.

        Calls dispatched in the block only consider this session's
        expectations.
        """
        return ActiveContext(self)

    def __enter__(self):
        """Enter in a 'with' context, binding the session to the thread."""
        _bound_controllers().append(self)
        return self

    def __exit__(self, type, value, traceback):
        """Exit from a 'with' context.

        This will run finish() at all times, but will only run verify()
        if the 'with' block itself hasn't raised an exception.  Exceptions
        in that block are never swallowed.
        """
        _unbind(self)
        self.finish()
        if type is None:
            self.verify()
        return False


# --------------------------------------------------------------------
# Test case integration.

class MockTestCase(unittest.TestCase):
    """unittest.TestCase subclass with a controller for every test.

    The controller is bound to the thread while the test method runs, and
    finished and verified once the method returns.  For instance::

        class SortTest(MockTestCase):

            def test_sort(self):
                sorter = self.mock(Sorter)
                self.expect(call(sorter, "length").returns(0))
                sort(sorter)
    """

    def __init__(self, methodName="runTest"):
        super(MockTestCase, self).__init__(methodName)
        self.controller = Controller(name=self.id())
        test_method = getattr(self, methodName, None)
        if test_method is not None:
            def test_method_wrapper():
                with self.controller:
                    return test_method()
            test_method_wrapper.__name__ = test_method.__name__
            test_method_wrapper.__doc__ = test_method.__doc__
            setattr(self, methodName, test_method_wrapper)

    def mock(self, spec, name=None, type=None):
        return Mock(spec, name=name, type=type)

    def expect(self, *expectations):
        return self.controller.expect(*expectations)

    def during(self, exercise):
        return self.controller.during(exercise)

#!/usr/bin/env python
"""
Trigger a parametrized Jenkins job on a remote server and follow it until it
starts running, or until it finishes if asked to wait.
"""
import argparse
import enum
import io
import json
import math
import os
import sys
import time
from itertools import cycle
from collections import namedtuple
from collections import OrderedDict
from urllib.parse import quote

import requests
import urllib3
from requests.structures import CaseInsensitiveDict


CONFIG = {
    'quiet': False,
    'progress': False,
    'debug': False,
    'wait': False,
    'persist': False,
    'properties_file': 'remote_build.properties',
    'timeout': 3600,
    'interval': 10,
    'max_errors': 0,
}
__version__ = '1.0.0'

# Seconds before a single HTTP call is abandoned
HTTP_TIMEOUT = 30


JobRequest = namedtuple('JobRequest', 'url job params auth verify_ssl')
BuildStatus = namedtuple('BuildStatus', 'building result')


class LaunchError(Exception):
    """
    Base class for every error that stops a remote build from being tracked.
    """


class ConfigurationError(LaunchError, ValueError):
    pass


class SubmissionError(LaunchError):
    pass


class TransportError(LaunchError):
    pass


class MalformedResponse(LaunchError):
    pass


class BuildCancelled(LaunchError):
    pass


class PollTimeoutError(LaunchError):
    def __init__(self, elapsed, timeout):
        msg = 'TIMEOUT: Exceeded {:g} seconds'.format(timeout)
        super().__init__(msg)
        self.elapsed = elapsed
        self.timeout = timeout


class LifecycleState(enum.Enum):
    QUEUED = 'queued'
    SCHEDULED = 'scheduled'
    BUILDING = 'building'
    FINISHED = 'finished'
    TIMED_OUT = 'timed out'
    FAILED = 'failed'


def _emit(level, args, kwargs):
    kwargs['file'] = sys.stderr
    stamp = time.strftime('%a %b %d %H:%M:%S %Z %Y')
    print('[{}] {}'.format(level, stamp), *args, **kwargs)


def log(*args, **kwargs):
    if CONFIG['quiet']:
        return
    _emit('INFO', args, kwargs)


def errlog(*args, **kwargs):
    _emit('ERROR', args, kwargs)


def debug(*args, **kwargs):
    if not CONFIG['debug']:
        return
    _emit('DEBUG', args, kwargs)


def env_number(name, default, cast=float):
    """
    Read a non-negative number from the environment, falling back to
    `default` when the variable is unset or empty.
    """
    value = os.environ.get(name, '').strip()
    if not value:
        return default
    try:
        number = cast(value)
    except ValueError:
        msg = '{} must be a number, got "{}"'.format(name, value)
        raise ConfigurationError(msg)
    if not math.isfinite(number):
        raise ConfigurationError('{} must be finite'.format(name))
    if number < 0:
        raise ConfigurationError('{} cannot be negative'.format(name))
    return number


def parse_param(param):
    """
    Validate a KEY=VALUE build parameter from the command line. The string
    is returned untouched so it can go straight into the query string.
    """
    key, sep, _ = param.partition('=')
    if not sep or not key.strip():
        msg = 'Invalid job parameter: "{}". Please use KEY=VALUE format'
        raise ConfigurationError(msg.format(param))
    return param


def parse_args(argv=None):
    """
    Parse command line arguments, update the global CONFIG and return a
    JobRequest describing the build to trigger.

    Required values are checked here rather than by argparse so that a
    missing one is reported as a ConfigurationError.
    """
    parser = argparse.ArgumentParser(
        prog='Remote Jenkins trigger',
        description='Trigger a parametrized Jenkins job and optionally '
        'wait for it to finish',
    )
    parser.add_argument(
        '-u', '--url', help='Base url of the Jenkins server', type=str
    )
    parser.add_argument(
        '-j',
        '--job',
        help='Name of the job to launch. Separate folders with a /',
        type=str,
    )
    parser.add_argument(
        '-p',
        '--param',
        help='A build parameter in the form KEY=VALUE. '
        'Can be specified multiple times',
        action='append',
        dest='params',
        default=[],
    )
    parser.add_argument(
        '-t', '--build-token', help='Token to trigger builds remotely'
    )
    parser.add_argument(
        '-s',
        '--user',
        help='Jenkins username',
        default=os.environ.get('JENKINS_USER', ''),
    )
    parser.add_argument(
        '-r',
        '--api-token',
        help='API token of the Jenkins user',
        default=os.environ.get('JENKINS_API_TOKEN', ''),
    )
    parser.add_argument(
        '-i',
        '--insecure',
        help='Do not validate the server certificate',
        action='store_true',
    )
    parser.add_argument(
        '-w',
        '--wait',
        help='Wait for the remote build to finish',
        action='store_true',
    )
    parser.add_argument(
        '-f',
        '--file',
        help='Write the build information to a properties file',
        action='store_true',
    )
    parser.add_argument(
        '--properties-file',
        help='Path of the properties file (default: %(default)s)',
        default=CONFIG['properties_file'],
    )
    parser.add_argument(
        '--max-errors',
        help='Give up after this many consecutive failed status checks. '
        '0 means never give up',
        type=int,
    )
    parser.add_argument(
        '--progress', help='Force show progress bar', action='store_true'
    )
    parser.add_argument(
        '-q', '--quiet', help='Do not print user messages', action='store_true'
    )
    parser.add_argument(
        '--debug', help='Print debug output', action='store_true'
    )
    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s v{}'.format(__version__),
    )
    args = parser.parse_args(argv)

    CONFIG['quiet'] = args.quiet
    CONFIG['progress'] = args.progress
    CONFIG['debug'] = args.debug
    CONFIG['wait'] = args.wait
    CONFIG['persist'] = args.file
    CONFIG['properties_file'] = args.properties_file
    CONFIG['timeout'] = env_number('BUILD_TIMEOUT_SECONDS', 3600)
    CONFIG['interval'] = env_number('POLL_INTERVAL', 10)
    if args.max_errors is None:
        CONFIG['max_errors'] = env_number('POLL_MAX_ERRORS', 0, cast=int)
    elif args.max_errors < 0:
        raise ConfigurationError('--max-errors cannot be negative')
    else:
        CONFIG['max_errors'] = args.max_errors

    if not args.url:
        raise ConfigurationError('JENKINS_URL (-u) not set')
    if not args.job or not args.job.strip('/'):
        raise ConfigurationError('JOB_NAME (-j) not set')

    params = [parse_param(p) for p in args.params]
    if args.build_token:
        params.append('token=' + args.build_token)
    if not params:
        raise ConfigurationError('No parameters were set!')

    return JobRequest(
        url=args.url.rstrip('/'),
        job=args.job,
        params=tuple(params),
        auth=(args.user or '', args.api_token or ''),
        verify_ssl=not args.insecure,
    )


def job_path(job):
    """
    Escape a job name for use in a url. Folders are separated by a / in the
    name and by /job/ in the url.
    """
    segments = job.strip('/').split('/')
    return '/job/'.join(quote(segment, safe='') for segment in segments)


def build_query(params):
    return '&'.join(params)


def trigger_url(request):
    """
    Get the url that queues a new build of the requested job.
    """
    return '{}/job/{}/buildWithParameters?{}'.format(
        request.url, job_path(request.job), build_query(request.params)
    )


def api_url(url):
    return url.rstrip('/') + '/api/json'


def queue_number(location):
    """
    Get the queue item number from its url, or None if it doesn't end in one.
    """
    number = location.rstrip('/').rpartition('/')[2]
    try:
        return int(number)
    except ValueError:
        return None


def extract_queue_location(headers):
    """
    Find the queue item url in the response to a build request.
    """
    headers = CaseInsensitiveDict(headers)
    location = headers.get('Location', '').strip()
    if not location:
        raise SubmissionError(
            'No QUEUED_URL was found. Did you remember to set a token (-t)?'
        )
    if 'queue' not in location:
        msg = 'Location "{}" is not a queue item. Did you set a token (-t)?'
        raise SubmissionError(msg.format(location))
    return location


def extract_field(body, path):
    """
    Parse a JSON body and return the value at a dotted path, like
    'executable.url'. Returns None when any part of the path is missing or
    null.
    """
    try:
        value = json.loads(body)
    except ValueError as error:
        raise MalformedResponse('Invalid JSON response: {}'.format(error))

    for key in path.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def get_stderr_size():
    """
    Get the size in lines and columns of the current STDERR.
    """
    return os.get_terminal_size(2)


def is_progressbar_capable():
    """
    Determine whether the current system is capable of showing the progress bar
    or not.
    """
    progress = sys.stderr.isatty() and sys.platform != 'win32'
    progress |= CONFIG['progress']
    try:
        get_stderr_size()
    except (OSError, ValueError):
        return False
    return progress


def format_millis(millis):
    """
    Format milliseconds as mm:ss.
    """
    millis = int(millis / 1000)
    if millis >= 3600:
        formatted = '%d:%02d:%02d' % (
            millis / 3600,
            (millis % 3600) / 60,
            (millis % 3600) % 60,
        )
    else:
        formatted = '%02d:%02d' % (millis / 60, millis % 60)

    return formatted


def show_progress(msg, duration, millis=None):
    """
    Show a message and a progress bar for the specified amount of time.

    When the terminal can't draw the bar the message is logged once as a
    regular line instead. After drawing the bar you need to print a newline
    manually if you intend to post any other message to stderr.
    """
    if not is_progressbar_capable():
        if millis is not None:
            msg = '[{}] {}'.format(format_millis(millis), msg.strip())
        log(msg + '...')
        time.sleep(duration)
        return

    bar = cycle(['|', '/', '-', '\\'])
    msg = msg.strip() + ' '
    out_msg = msg
    elapsed = 0
    while elapsed < duration:
        if millis is not None:
            out_msg = '[{}] {}'.format(format_millis(millis), msg)
            millis += 100

        spaces = get_stderr_size().columns - len(out_msg) - 3
        spaces = max(spaces, 40)
        if not CONFIG['quiet']:
            out = '{}{}  {}'.format(out_msg, '.' * spaces, next(bar))
            print(out, end='\r', file=sys.stderr)
        time.sleep(0.1)
        elapsed += 0.1


def poll_until(action, interval, timeout, max_errors=0, msg='Waiting'):
    """
    Call `action` until it returns something other than None and return that
    value.

    Elapsed time grows by the interval plus the time the call took, and it is
    checked before every call. Raises PollTimeoutError once it goes over
    `timeout`. Transport and parsing errors count as "not ready yet", unless
    `max_errors` of them happen in a row, in which case the last one is
    raised.
    """
    elapsed = 0.0
    errors = 0
    slept = False
    try:
        while True:
            if elapsed > timeout:
                raise PollTimeoutError(elapsed, timeout)

            start = time.monotonic()
            try:
                value = action()
            except (TransportError, MalformedResponse) as error:
                errors += 1
                debug('Status check failed ({} in a row): {}'.format(
                    errors, error
                ))
                if max_errors and errors >= max_errors:
                    raise
                value = None
            else:
                errors = 0

            if value is not None:
                return value

            latency = time.monotonic() - start
            show_progress(msg, interval, millis=elapsed * 1000)
            slept = True
            elapsed += interval + latency
    finally:
        if slept and is_progressbar_capable() and not CONFIG['quiet']:
            print('', file=sys.stderr)


class Summary:
    """
    Append-only record of what we learn about the remote build.

    Subscribers are called with `(field, value)` every time a new field is
    recorded, in the order the lifecycle discovers them.
    """

    FIELDS = ('url', 'queue_number', 'scheduled', 'build_url', 'result')

    def __init__(self):
        self._values = OrderedDict()
        self._subscribers = []

    def subscribe(self, callback):
        self._subscribers.append(callback)

    def record(self, field, value):
        if field not in self.FIELDS:
            raise KeyError(field)
        if field in self._values:
            raise ValueError('{} has already been recorded'.format(field))
        self._values[field] = value
        for callback in self._subscribers:
            callback(field, value)

    def get(self, field, default=None):
        return self._values.get(field, default)

    def __contains__(self, field):
        return field in self._values

    def items(self):
        return self._values.items()


class PropertiesFile:
    """
    Summary subscriber that writes KEY=VALUE lines for the calling pipeline.
    The file is truncated when the subscriber is created.
    """

    KEYS = {
        'url': 'REMOTE_JENKINS_URL',
        'queue_number': 'QUEUED_NUMBER',
        'scheduled': 'SCHEDULED',
        'build_url': 'REMOTE_BUILD_URL',
    }

    def __init__(self, path):
        self.path = path
        io.open(path, 'w', encoding='utf-8').close()

    def __call__(self, field, value):
        key = self.KEYS.get(field)
        if key is None:
            return
        if value is None:
            value = ''
        elif isinstance(value, bool):
            value = str(value).lower()
        with io.open(self.path, 'a', encoding='utf-8') as file:
            file.write('{}={}\n'.format(key, value))


class Session:
    def __init__(self, auth=None, verify_ssl=True):
        self.http = requests.Session()
        self.http.headers['User-Agent'] = 'remote_jenkins/' + __version__
        self.http.auth = tuple(auth) if auth else ('', '')
        self.http.verify = verify_ssl
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def call(self, method, url, allow_redirects=True):
        """
        Send an authenticated request and return the response headers and
        body. Network errors and HTTP errors raise TransportError.
        """
        debug(method, url)
        try:
            response = self.http.request(
                method,
                url,
                allow_redirects=allow_redirects,
                timeout=HTTP_TIMEOUT,
                verify=self.http.verify,
            )
        except requests.RequestException as error:
            msg = '{} {} failed: {}'.format(method, url, error)
            raise TransportError(msg) from error

        if response.status_code >= 400:
            msg = '{} {} returned HTTP {}'.format(
                method, url, response.status_code
            )
            raise TransportError(msg)
        return response.headers, response.text

    def launch_build(self, request):
        """
        Submit the build request and return the queue item location.
        """
        url = trigger_url(request)
        log('Calling REMOTE_JOB_URL:', url)
        headers, _ = self.call('POST', url, allow_redirects=False)
        return extract_queue_location(headers)

    def get_queue_status(self, location):
        """
        Check the status of a queue item. Returns the build url if the job is
        already executing, or None if it's still in the queue.
        """
        _, body = self.call('POST', api_url(location))
        if extract_field(body, 'cancelled'):
            raise BuildCancelled('Build was cancelled while in the queue')
        return extract_field(body, 'executable.url')

    def wait_queue(self, location, interval=10, timeout=3600, max_errors=0):
        """
        Wait until the queue item turns into a build and return its url.
        """
        return poll_until(
            lambda: self.get_queue_status(location),
            interval,
            timeout,
            max_errors=max_errors,
            msg='Job queued',
        )

    def build_status(self, build_url):
        _, body = self.call('POST', api_url(build_url))
        return BuildStatus(
            building=extract_field(body, 'building'),
            result=extract_field(body, 'result'),
        )

    def get_result(self, build_url):
        _, body = self.call('POST', api_url(build_url))
        return extract_field(body, 'result')

    def wait_running(self, build_url, interval=10, timeout=3600, max_errors=0):
        """
        Wait until the build is reported as building, or until it has a
        result because it finished before we could see it running.

        A build that is not building and has no result yet keeps being
        polled, so an early `building: false` does not count as final.
        """
        def started():
            status = self.build_status(build_url)
            if status.building is True or status.result is not None:
                return status
            return None

        return poll_until(
            started,
            interval,
            timeout,
            max_errors=max_errors,
            msg='Waiting for build to start',
        )

    def wait_job(self, build_url, interval=10, timeout=3600, max_errors=0):
        """
        Wait until the build stops building and return its last status.
        """
        def finished():
            status = self.build_status(build_url)
            return status if status.building is False else None

        name = '#' + build_url.rstrip('/').rpartition('/')[2]
        return poll_until(
            finished,
            interval,
            timeout,
            max_errors=max_errors,
            msg='Build {} in progress'.format(name),
        )


class Lifecycle:
    """
    Take a build request from submission to a final state.

    The phases run one after the other: submit the build, wait for the queue
    item to become a build, confirm the build is running and, if `wait` is
    set, wait for it to finish. Everything learned along the way is recorded
    in `summary`.
    """

    def __init__(self, session, request, summary=None, wait=False,
                 interval=10, timeout=3600, max_errors=0):
        self.session = session
        self.request = request
        self.summary = summary if summary is not None else Summary()
        self.wait = wait
        self.poll = dict(
            interval=interval, timeout=timeout, max_errors=max_errors
        )
        self.state = None
        self.result = None
        self.build_url = None

    @property
    def succeeded(self):
        if self.state is LifecycleState.FINISHED:
            return self.result == 'SUCCESS'
        return self.state is LifecycleState.BUILDING and not self.wait

    def _enter(self, state):
        debug('Build state: {} -> {}'.format(
            self.state.value if self.state else None, state.value
        ))
        self.state = state
        return state

    def _finish(self, result):
        self.result = result
        self.summary.record('result', result)
        if result == 'SUCCESS':
            log('BUILD RESULT:', result)
        else:
            errlog(
                'BUILD RESULT: {} - Build is unsuccessful, timed out, or '
                'status could not be obtained.'.format(result)
            )
        return self._enter(LifecycleState.FINISHED)

    def _stop(self, state):
        self.summary.record('result', None)
        return self._enter(state)

    def _fetch_result(self):
        try:
            return self.session.get_result(self.build_url)
        except (TransportError, MalformedResponse) as error:
            errlog('Could not get the build result:', error)
            return None

    def run(self):
        """
        Run every phase and return the final LifecycleState.

        Errors while submitting the build are raised after moving to FAILED.
        Every later problem ends in a final state instead.
        Every final state but BUILDING records a `result`, None if unknown.
        """
        self.summary.record('url', self.request.url)
        try:
            location = self.session.launch_build(self.request)
        except LaunchError:
            self._stop(LifecycleState.FAILED)
            raise
        self._enter(LifecycleState.QUEUED)

        number = queue_number(location)
        log('QUEUED_NUMBER:', number)
        self.summary.record('queue_number', number)

        try:
            self.build_url = self.session.wait_queue(location, **self.poll)
        except PollTimeoutError as error:
            errlog(error)
            errlog('Our build is not scheduled. Exiting...')
            self.summary.record('scheduled', False)
            return self._stop(LifecycleState.TIMED_OUT)
        except LaunchError as error:
            errlog(error)
            self.summary.record('scheduled', False)
            return self._stop(LifecycleState.FAILED)

        log('REMOTE_BUILD_URL:', self.build_url)
        self.summary.record('scheduled', True)
        self.summary.record('build_url', self.build_url)
        self._enter(LifecycleState.SCHEDULED)

        timed_out = False
        try:
            status = self.session.wait_running(self.build_url, **self.poll)
        except PollTimeoutError as error:
            errlog(error)
            status, timed_out = None, True
        except LaunchError as error:
            errlog(error)
            status = None

        if status is None or status.building is not True:
            # The build may have finished before the first status check
            errlog('Our build is not being built. Checking its result...')
            if status is not None:
                result = status.result
            else:
                result = self._fetch_result()
            if result is None and timed_out:
                return self._stop(LifecycleState.TIMED_OUT)
            return self._finish(result)

        log('Build is running')
        self._enter(LifecycleState.BUILDING)
        if not self.wait:
            return self.state

        try:
            self.session.wait_job(self.build_url, **self.poll)
        except PollTimeoutError as error:
            errlog(error)
            return self._stop(LifecycleState.TIMED_OUT)
        except LaunchError as error:
            errlog(error)
            return self._stop(LifecycleState.FAILED)
        return self._finish(self._fetch_result())


def main(argv=None):
    """
    Trigger a remote Jenkins build and return the process exit code.
    """
    try:
        request = parse_args(argv)
        log('JENKINS_URL:', request.url)
        log('JOB_NAME:', job_path(request.job))
        log('PARAMS:', build_query(request.params))

        summary = Summary()
        if CONFIG['persist']:
            summary.subscribe(PropertiesFile(CONFIG['properties_file']))

        session = Session(request.auth, request.verify_ssl)
        lifecycle = Lifecycle(
            session,
            request,
            summary,
            wait=CONFIG['wait'],
            interval=CONFIG['interval'],
            timeout=CONFIG['timeout'],
            max_errors=CONFIG['max_errors'],
        )
        lifecycle.run()
    except LaunchError as error:
        if CONFIG['debug']:
            raise
        errlog('Err:', error)
        return 1

    if lifecycle.build_url:
        print(lifecycle.build_url)
    return int(not lifecycle.succeeded)


if __name__ == '__main__':
    sys.exit(main())

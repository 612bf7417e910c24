#!/usr/bin/env python

'''
Version: 0.1
Name: Extensions Harness

Synopsis:
Python wrapper for the Azure Service Management extension publishing API, supporting:
- building extension manifests (package upload to a storage account)
- registering new extension types and publishing new versions
- promoting versions to one or more regions, or to all regions
- listing published versions and their replication status
- unpublishing and deleting versions

Requires:
- [Requests: HTTP for Humans](http://docs.python-requests.org/en/latest/)
- [Python module that makes working with XML feel like you are working with JSON](https://github.com/martinblech/xmltodict)
- [Microsoft Azure Service Management legacy SDK](https://github.com/Azure/azure-sdk-for-python)
- [Microsoft Azure Storage Blob SDK](https://github.com/Azure/azure-sdk-for-python)
- [Python interface to the OpenSSL library](https://github.com/pyca/pyopenssl)
- [Pretty-print tabular data](https://github.com/astanin/python-tabulate)
'''

import time, sys, os, argparse, logging, json, configparser, inspect, tempfile

from datetime import datetime, timedelta, timezone
from xml.parsers.expat import ExpatError
from urllib.parse import urlsplit, quote
from functools import wraps

try:
    from requests import Session, RequestException, ConnectionError as RequestsConnectionError, Timeout as RequestsTimeout
except ImportError:
    sys.stderr.write('ERROR: Python module "requests" not found, please run "pip install requests".\n')
    sys.exit(1)

try:
    from azure.common import AzureHttpError, AzureConflictHttpError
    from azure.servicemanagement import ServiceManagementService
    from azure.core.exceptions import AzureError, ResourceExistsError
    from azure.storage.blob import BlobServiceClient, BlobSasPermissions, generate_blob_sas
except ImportError:
    sys.stderr.write('ERROR: Python modules "azure-servicemanagement-legacy" and "azure-storage-blob" not found, please run "pip install azure-servicemanagement-legacy azure-storage-blob".\n')
    sys.exit(1)

try:
    import xmltodict
except ImportError:
    sys.stderr.write('ERROR: Python module "xmltodict" not found, please run "pip install xmltodict".\n')
    sys.exit(1)

try:
    import OpenSSL.crypto as pyopenssl
    from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
except ImportError:
    sys.stderr.write('ERROR: Python module "pyOpenSSL" not found, please run "pip install pyopenssl".\n')
    sys.exit(1)

try:
    from tabulate import tabulate
except ImportError:
    sys.stderr.write('ERROR: Python module "tabulate" not found, please run "pip install tabulate".\n')
    sys.exit(1)

__version__ = '0.1.0'

DEFAULT_MANAGEMENT_URL = 'https://management.core.windows.net/'
DEFAULT_STORAGE_BASE_URL = 'core.windows.net'
DEFAULT_PACKAGE_CONTAINER = 'extension-packages'
DEFAULT_SAS_DAYS = 365
X_MS_VERSION = '2014-10-01'
AZURE_XMLNS = 'http://schemas.microsoft.com/windowsazure'
XSI_XMLNS = 'http://www.w3.org/2001/XMLSchema-instance'

DEFAULT_TRIES = 3
DEFAULT_DELAY = 2
DEFAULT_BACKOFF = 2

log = logging.getLogger('extensions_harness')


class HarnessError(Exception):
    pass


class MissingParameterError(HarnessError):
    pass


class CertificateError(HarnessError):
    pass


class ManifestError(HarnessError):
    pass


class OperationFailedError(HarnessError):

    def __init__(self, request_id, http_status_code=None, code=None, message=None):
        self.request_id = request_id
        self.http_status_code = http_status_code
        self.code = code
        self.message = message
        super(OperationFailedError, self).__init__('operation %s failed (http_status_code=%s): %s: %s' % (request_id,
                                                                                                          http_status_code,
                                                                                                          code,
                                                                                                          message))


class OperationTimeoutError(HarnessError):

    def __init__(self, request_id, timeout):
        self.request_id = request_id
        self.timeout = timeout
        super(OperationTimeoutError, self).__init__('operation %s still in progress after %s seconds' % (request_id, timeout))


def logger(message=None, level=logging.DEBUG):
    log.log(level, message)


def setup_logging(verbose=False, log_file=None):
    log.handlers[:] = []
    log.setLevel(logging.DEBUG)
    log.propagate = False
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter('%(levelname)s %(message)s'))
    log.addHandler(console)
    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
        log.addHandler(fh)


def retry(ExceptionToCheck, tries=DEFAULT_TRIES, delay=DEFAULT_DELAY, backoff=DEFAULT_BACKOFF, cdata=None):
    """Retry calling the decorated function using an exponential backoff.

    http://www.saltycrane.com/blog/2009/11/trying-out-retry-decorator-python/
    original from: http://wiki.python.org/moin/PythonDecoratorLibrary#Retry

    :param ExceptionToCheck: the exception to check. may be a tuple of
        exceptions to check
    :type ExceptionToCheck: Exception or tuple
    :param tries: number of times to try (not retry) before giving up
    :type tries: int
    :param delay: initial delay between retries in seconds
    :type delay: int
    :param backoff: backoff multiplier e.g. value of 2 will double the delay
        each retry
    :type backoff: int
    :param cdata: context included in the retry log message
    """
    def deco_retry(f):
        @wraps(f)
        def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return f(*args, **kwargs)
                except ExceptionToCheck as e:
                    logger(message='%s, retrying in %d seconds (mtries=%d): %s' % (repr(e), mdelay, mtries, str(cdata)),
                           level=logging.WARNING)
                    time.sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return f(*args, **kwargs)
        return f_retry  # true decorator
    return deco_retry


def to_bool(value):
    return str(value).strip().lower() == 'true'


def management_host(management_url):
    '''
    Host name of the management endpoint, the legacy SDK takes a host rather than a URL.
    '''
    return urlsplit(management_url).netloc or management_url.strip('/')


def response_header(response, name):
    headers = response.headers
    if isinstance(headers, dict):
        headers = headers.items()
    for k, v in headers:
        if k.lower() == name.lower():
            return v
    return None


def build_extension_manifest(namespace, name, version, label=None, description=None, media_link=None,
                             eula_url=None, privacy_url=None, homepage_url=None, company=None,
                             supported_os=None, regions=None):
    '''
    Builds an ExtensionImage manifest used to register or update an extension.

    The remote service rejects manifests whose elements are out of order, so
    the keys below are inserted in the order the schema requires.
    '''
    image = dict()
    image['@xmlns'] = AZURE_XMLNS
    image['@xmlns:i'] = XSI_XMLNS
    image['ProviderNameSpace'] = namespace
    image['Type'] = name
    image['Version'] = version
    image['Label'] = label
    image['HostingResources'] = 'VmRole'
    image['MediaLink'] = media_link
    image['Description'] = description
    image['IsInternalExtension'] = 'true'
    image['Eula'] = eula_url
    image['PrivacyUri'] = privacy_url
    image['HomepageUri'] = homepage_url
    image['IsJsonExtension'] = 'true'
    image['CompanyName'] = company
    image['SupportedOS'] = supported_os
    if regions:
        image['Regions'] = ';'.join(regions)
    return xmltodict.unparse({'ExtensionImage': image}, pretty=True, indent='  ')


def build_unpublish_manifest(namespace, name, version, is_xml_extension=False):
    '''
    Builds the minimal manifest that marks a version internal again.
    PaaS (XML) extensions must not claim to be JSON extensions.
    '''
    image = dict()
    image['@xmlns'] = AZURE_XMLNS
    image['@xmlns:i'] = XSI_XMLNS
    image['ProviderNameSpace'] = namespace
    image['Type'] = name
    image['Version'] = version
    image['IsInternalExtension'] = 'true'
    if not is_xml_extension:
        image['IsJsonExtension'] = 'true'
    return xmltodict.unparse({'ExtensionImage': image}, pretty=True, indent='  ')


def read_manifest(manifest):
    try:
        doc = xmltodict.parse(manifest)
    except ExpatError as e:
        raise ManifestError('cannot parse manifest: %s' % e)

    image = doc.get('ExtensionImage')
    if not isinstance(image, dict):
        raise ManifestError('manifest root element must be ExtensionImage, found %s' % ', '.join(doc.keys()))
    for key in ['ProviderNameSpace', 'Type', 'Version']:
        if not image.get(key):
            raise ManifestError('manifest is missing required element %s' % key)
    return doc


def read_manifest_file(path):
    try:
        with open(path, 'rb') as f:
            return f.read()
    except IOError as e:
        raise ManifestError('cannot read manifest %s: %s' % (path, e))


def promote_manifest(manifest, regions=None):
    '''
    Marks the manifest public. With regions the rollout is limited to those
    locations, without it the extension is released everywhere.
    '''
    doc = read_manifest(manifest)
    image = doc['ExtensionImage']
    if 'IsInternalExtension' not in image:
        raise ManifestError('manifest is missing required element IsInternalExtension')
    image['IsInternalExtension'] = 'false'
    image.pop('Regions', None)
    if regions:
        image['Regions'] = ';'.join(regions)
    return xmltodict.unparse(doc, pretty=True, indent='  ')


def manifest_identity(manifest):
    image = read_manifest(manifest)['ExtensionImage']
    return image['ProviderNameSpace'], image['Type'], image['Version']


def parse_extension_versions(body):
    doc = xmltodict.parse(body, force_list=('ExtensionImage',))
    images = doc.get('ExtensionImages') or {}
    l = []
    for image in images.get('ExtensionImage', []):
        d = dict()
        d['Namespace'] = image.get('ProviderNameSpace')
        d['Type'] = image.get('Type')
        d['Version'] = image.get('Version')
        d['ReplicationCompleted'] = to_bool(image.get('ReplicationCompleted'))
        d['IsInternalExtension'] = to_bool(image.get('IsInternalExtension'))
        d['Regions'] = image.get('Regions') or ''
        l.append(d)
    return l


def parse_replication_status(body):
    doc = xmltodict.parse(body, force_list=('ReplicationStatus',))
    statuses = doc.get('ReplicationStatusList') or {}
    return [{'Location': s.get('Location'), 'Status': s.get('Status')} for s in statuses.get('ReplicationStatus', [])]


def print_as_json(obj, out=None):
    out = out or sys.stdout
    out.write(json.dumps(obj, indent=2))
    out.write('\n')


def print_as_table(headers, rows, out=None):
    out = out or sys.stdout
    out.write(tabulate(rows, headers=headers, tablefmt='grid'))
    out.write('\n')


class ManagementCertificate(object):
    '''
    Management certificate given as .pem (certificate and key) or as .pfx with an
    empty password. The PEM form is written to a private temporary file because
    the TLS client certificate has to be passed by path.
    '''

    def __init__(self, cert_file):
        self.cert_file = cert_file
        self.pem = self.read(cert_file)
        self.path = None

        try:
            cert = pyopenssl.load_certificate(pyopenssl.FILETYPE_PEM, self.pem)
        except pyopenssl.Error as e:
            raise CertificateError('no certificate found in %s: %s' % (cert_file, e))
        self.thumbprint = cert.digest('sha1').decode('ascii').replace(':', '')
        logger('%s: using management certificate %s (thumbprint=%s)' % (inspect.stack()[0][3],
                                                                       cert_file,
                                                                       self.thumbprint))
        if cert.has_expired():
            logger('management certificate %s (thumbprint=%s) has expired' % (cert_file, self.thumbprint),
                   level=logging.WARNING)

        fd, self.path = tempfile.mkstemp(prefix='mgmt-cert-', suffix='.pem')
        with os.fdopen(fd, 'wb') as f:
            f.write(self.pem)

    @staticmethod
    def read(cert_file):
        try:
            with open(cert_file, 'rb') as f:
                b = f.read()
        except IOError as e:
            raise CertificateError('cannot read certificate %s: %s' % (cert_file, e))

        if b'-----BEGIN' in b:
            return b
        return ManagementCertificate.pfx_to_pem(b, cert_file)

    @staticmethod
    def pfx_to_pem(b, cert_file=None):
        last_error = None
        for password in (None, b''):
            try:
                key, cert, additional = pkcs12.load_key_and_certificates(b, password)
                break
            except ValueError as e:
                last_error = e
        else:
            raise CertificateError('cannot read certificate %s: %s' % (cert_file, last_error))

        if cert is None:
            raise CertificateError('no certificate found in %s' % cert_file)

        pem = cert.public_bytes(Encoding.PEM)
        if key is not None:
            pem += key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
        for c in additional or []:
            pem += c.public_bytes(Encoding.PEM)
        return pem

    def close(self):
        if self.path and os.path.exists(self.path):
            os.remove(self.path)
        self.path = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ExtensionsClient(object):
    '''
    Extension publishing calls on top of the legacy ServiceManagementService.
    '''
    x_ms_version = X_MS_VERSION
    content_type = 'application/xml'
    default_wait = 15
    default_timeout = 3600

    def __init__(self, subscription_id, cert_file, management_url=DEFAULT_MANAGEMENT_URL,
                 request_session=None, sms=None):
        self.subscription_id = subscription_id
        self.cert_file = cert_file
        self.management_url = management_url or DEFAULT_MANAGEMENT_URL

        if sms is None:
            sms = ServiceManagementService(subscription_id,
                                           cert_file,
                                           host=management_host(self.management_url),
                                           request_session=request_session)
            sms.content_type = self.content_type
        self.sms = sms

    def path(self, *parts):
        return '/%s/%s' % (self.subscription_id, '/'.join(parts))

    def request_id(self, response):
        request_id = response_header(response, 'x-ms-request-id')
        if not request_id:
            raise HarnessError('response carries no x-ms-request-id header (status=%s)' % getattr(response, 'status', None))
        return request_id

    def perform_get(self, path):
        logger('%s: GET %s' % (inspect.stack()[0][3], path))
        return self.sms.perform_get(path, x_ms_version=self.x_ms_version)

    def perform_post(self, path, body):
        logger('%s: POST %s' % (inspect.stack()[0][3], path))

        @retry(AzureConflictHttpError, tries=3, delay=10, backoff=2, cdata='method=%s()' % inspect.stack()[0][3])
        def perform_post_retry():
            return self.sms.perform_post(path, body, x_ms_version=self.x_ms_version)

        return perform_post_retry()

    def perform_put(self, path, body):
        logger('%s: PUT %s' % (inspect.stack()[0][3], path))

        @retry(AzureConflictHttpError, tries=3, delay=10, backoff=2, cdata='method=%s()' % inspect.stack()[0][3])
        def perform_put_retry():
            return self.sms.perform_put(path, body, x_ms_version=self.x_ms_version)

        return perform_put_retry()

    def perform_delete(self, path):
        logger('%s: DELETE %s' % (inspect.stack()[0][3], path))

        @retry(AzureConflictHttpError, tries=3, delay=10, backoff=2, cdata='method=%s()' % inspect.stack()[0][3])
        def perform_delete_retry():
            return self.sms.perform_delete(path, x_ms_version=self.x_ms_version)

        return perform_delete_retry()

    def create_extension(self, manifest):
        return self.request_id(self.perform_post(self.path('services', 'extensions'), manifest))

    def update_extension(self, manifest):
        return self.request_id(self.perform_put(self.path('services', 'extensions?action=update'), manifest))

    def delete_extension(self, namespace, name, version):
        return self.request_id(self.perform_delete(self.path('services', 'extensions', namespace, name, version)))

    def list_versions(self):
        response = self.perform_get(self.path('services', 'publisherextensions'))
        return parse_extension_versions(response.body)

    def get_replication_status(self, namespace, name, version):
        response = self.perform_get(self.path('services', 'extensions', namespace, name, version, 'replicationstatus'))
        return parse_replication_status(response.body)

    def get_operation_status(self, request_id):

        @retry((RequestsConnectionError, RequestsTimeout), tries=3, delay=5, backoff=2, cdata='request_id=%s' % request_id)
        def get_operation_status_retry():
            return self.sms.get_operation_status(request_id)

        return get_operation_status_retry()

    def wait_for_operation(self, request_id, timeout=None, sleep_interval=None):
        timeout = self.default_timeout if timeout is None else timeout
        sleep_interval = self.default_wait if sleep_interval is None else sleep_interval
        start = time.monotonic()
        while True:
            operation = self.get_operation_status(request_id)
            logger('%s: x-ms-operation-id=%s status=%s' % (inspect.stack()[0][3], request_id, operation.status))
            if operation.status == 'Succeeded':
                return operation
            if operation.status == 'Failed':
                error = getattr(operation, 'error', None)
                raise OperationFailedError(request_id,
                                           http_status_code=getattr(operation, 'http_status_code', None),
                                           code=getattr(error, 'code', None),
                                           message=getattr(error, 'message', None))
            if time.monotonic() - start >= timeout:
                raise OperationTimeoutError(request_id, timeout)
            time.sleep(sleep_interval)

    def get_storage_account_key(self, account):
        keys = self.sms.get_storage_account_keys(account)
        return keys.storage_service_keys.primary

    def upload_package(self, account, package, blob_name, storage_base_url=DEFAULT_STORAGE_BASE_URL,
                       container=DEFAULT_PACKAGE_CONTAINER, sas_days=DEFAULT_SAS_DAYS):
        '''
        Uploads the extension package and returns a read-only SAS URL to it.
        '''
        key = self.get_storage_account_key(account)
        account_url = 'https://%s.blob.%s' % (account, storage_base_url or DEFAULT_STORAGE_BASE_URL)
        blob_service = BlobServiceClient(account_url=account_url, credential=key)

        container_client = blob_service.get_container_client(container)
        try:
            container_client.create_container()
            logger('%s: created container %s in %s' % (inspect.stack()[0][3], container, account))
        except ResourceExistsError:
            logger('%s: container %s already exists in %s' % (inspect.stack()[0][3], container, account))

        blob_client = container_client.get_blob_client(blob_name)
        logger('%s: uploading %s to %s' % (inspect.stack()[0][3], package, blob_client.url), level=logging.INFO)
        try:
            with open(package, 'rb') as f:
                blob_client.upload_blob(f, overwrite=True)
        except IOError as e:
            raise HarnessError('cannot read package %s: %s' % (package, e))

        now = datetime.now(timezone.utc)
        sas = generate_blob_sas(account_name=account,
                                container_name=container,
                                blob_name=blob_name,
                                account_key=key,
                                permission=BlobSasPermissions(read=True),
                                start=now - timedelta(minutes=5),
                                expiry=now + timedelta(days=sas_days))
        return '%s/%s/%s?%s' % (account_url, container, quote(blob_name), sas)


class BaseHarnessClass(object):
    config_file = '%s.conf' % os.path.splitext(os.path.basename(__file__))[0]
    log_file = None

    default_subscription_id = None
    default_subscription_cert = None
    default_management_url = DEFAULT_MANAGEMENT_URL
    default_storage_base_url = DEFAULT_STORAGE_BASE_URL
    default_storage_account = None
    default_namespace = None
    default_name = None
    proxy = False
    proxy_host = None
    proxy_port = None
    ssl_verify = True

    # (section, option, attribute)
    config_options = [('AzureConfig', 'subscription_id', 'default_subscription_id'),
                      ('AzureConfig', 'subscription_cert', 'default_subscription_cert'),
                      ('AzureConfig', 'management_url', 'default_management_url'),
                      ('AzureConfig', 'storage_base_url', 'default_storage_base_url'),
                      ('AzureConfig', 'storage_account', 'default_storage_account'),
                      ('AzureConfig', 'proxy_host', 'proxy_host'),
                      ('AzureConfig', 'proxy_port', 'proxy_port'),
                      ('AzureConfig', 'log_file', 'log_file'),
                      ('Extension', 'namespace', 'default_namespace'),
                      ('Extension', 'name', 'default_name')]

    def __init__(self, config_file=None):
        self.config_file = config_file or self.config_file
        self.cp = configparser.ConfigParser()
        try:
            self.cp.read(self.config_file)
        except configparser.Error as e:
            raise HarnessError('cannot parse configuration file %s: %s' % (self.config_file, e))

        for section, option, attr in self.config_options:
            if self.cp.has_option(section, option):
                setattr(self, attr, self.cp.get(section, option))
        if self.cp.has_option('AzureConfig', 'proxy'):
            self.proxy = self.cp.getboolean('AzureConfig', 'proxy')
        if self.cp.has_option('AzureConfig', 'ssl_verify'):
            self.ssl_verify = self.cp.getboolean('AzureConfig', 'ssl_verify')

    def default(self, env, attr):
        return os.environ.get(env) or getattr(self, attr)

    def set_session(self, cert_file):
        s = Session()
        s.cert = cert_file
        s.verify = self.ssl_verify
        if self.proxy:
            s.proxies = {'http': 'http://%s:%s' % (self.proxy_host, self.proxy_port),
                         'https': 'http://%s:%s' % (self.proxy_host, self.proxy_port)}
        return s


class ExtensionsHarness(BaseHarnessClass):
    default_action = 'list_versions'
    mgmt_params = ['subscription_id', 'subscription_cert', 'management_url']
    actions = [{'action': 'new_extension_manifest',
                'params': mgmt_params + ['package', 'storage_account', 'namespace', 'name', 'version', 'label',
                                         'description', 'eula_url', 'privacy_url', 'homepage_url', 'company', 'supported_os'],
                'help': 'Creates an XML file used to publish or update extension.'},
               {'action': 'new_extension',
                'params': mgmt_params + ['manifest'],
                'help': 'Creates a new type of extension, not for releasing new versions.'},
               {'action': 'new_extension_version',
                'params': mgmt_params + ['manifest'],
                'help': 'Publishes a new type of extension internally.'},
               {'action': 'promote',
                'params': mgmt_params + ['manifest', 'region'],
                'help': 'Promote published internal extension to PROD in one or more locations.'},
               {'action': 'promote_all_regions',
                'params': mgmt_params + ['manifest'],
                'help': 'Promote published extension to all Locations.'},
               {'action': 'list_versions',
                'params': mgmt_params,
                'help': 'Lists all published extension versions for subscription'},
               {'action': 'replication_status',
                'params': mgmt_params + ['namespace', 'name', 'version'],
                'help': 'Retrieves replication status for an uploaded extension package'},
               {'action': 'unpublish_version',
                'params': mgmt_params + ['namespace', 'name', 'version'],
                'help': 'Marks the specified version of the extension internal. Does not delete.'},
               {'action': 'delete_version',
                'params': mgmt_params + ['namespace', 'name', 'version'],
                'help': 'Deletes the extension version. It should be unpublished first.'},
               {'action': 'operation_status',
                'params': mgmt_params + ['request_id'],
                'help': 'Retrieves the status of an asynchronous operation.'}]

    def __init__(self, config_file=None, client=None, out=None):
        super(ExtensionsHarness, self).__init__(config_file=config_file)
        self.client = client
        self.certificate = None
        self.out = out or sys.stdout

    def verify_params(self, method, params):
        for param in [p['params'] for p in self.actions if p['action'] == method][0]:
            if param not in params or params[param] is None or params[param] == '' or params[param] == []:
                raise MissingParameterError('argument "--%s" must be provided' % param.replace('_', '-'))
        return params

    def mkclient(self, arg):
        if self.client is not None:
            return self.client
        self.certificate = ManagementCertificate(arg['subscription_cert'])
        self.client = ExtensionsClient(arg['subscription_id'],
                                       self.certificate.path,
                                       management_url=arg.get('management_url'),
                                       request_session=self.set_session(self.certificate.path))
        return self.client

    def close(self):
        if self.certificate is not None:
            self.certificate.close()
            self.certificate = None
            self.client = None

    def run(self, arg):
        action = arg.get('action') or self.default_action
        self.verify_params(action, arg)
        try:
            return getattr(self, action)(arg)
        finally:
            self.close()

    def run_operation(self, arg, client, operation, request_id):
        logger('%s operation started (x-ms-operation-id=%s)' % (operation, request_id), level=logging.INFO)
        client.wait_for_operation(request_id, timeout=arg.get('timeout'), sleep_interval=arg.get('wait'))
        logger('%s operation finished (x-ms-operation-id=%s)' % (operation, request_id), level=logging.INFO)
        return request_id

    def new_extension_manifest(self, arg):
        client = self.mkclient(arg)
        blob_name = '%s-%s-%s.zip' % (arg['namespace'], arg['name'], arg['version'])
        media_link = client.upload_package(arg['storage_account'],
                                           arg['package'],
                                           blob_name,
                                           storage_base_url=arg.get('storage_base_url'))
        manifest = build_extension_manifest(arg['namespace'],
                                            arg['name'],
                                            arg['version'],
                                            label=arg['label'],
                                            description=arg['description'],
                                            media_link=media_link,
                                            eula_url=arg['eula_url'],
                                            privacy_url=arg['privacy_url'],
                                            homepage_url=arg['homepage_url'],
                                            company=arg['company'],
                                            supported_os=arg['supported_os'])
        self.out.write(manifest)
        self.out.write('\n')
        return manifest

    def new_extension(self, arg):
        manifest = read_manifest_file(arg['manifest'])
        logger('registering extension %s.%s %s' % manifest_identity(manifest), level=logging.INFO)
        client = self.mkclient(arg)
        return self.run_operation(arg, client, 'CreateExtension', client.create_extension(manifest))

    def new_extension_version(self, arg):
        manifest = read_manifest_file(arg['manifest'])
        logger('publishing extension %s.%s %s' % manifest_identity(manifest), level=logging.INFO)
        client = self.mkclient(arg)
        return self.run_operation(arg, client, 'UpdateExtension', client.update_extension(manifest))

    def promote(self, arg):
        manifest = promote_manifest(read_manifest_file(arg['manifest']), regions=arg['region'])
        logger('promoting extension %s.%s %s to regions: %s' % (manifest_identity(manifest) + ('; '.join(arg['region']),)),
               level=logging.INFO)
        client = self.mkclient(arg)
        return self.run_operation(arg, client, 'UpdateExtension', client.update_extension(manifest))

    def promote_all_regions(self, arg):
        manifest = promote_manifest(read_manifest_file(arg['manifest']))
        logger('promoting extension %s.%s %s to all regions' % manifest_identity(manifest), level=logging.INFO)
        client = self.mkclient(arg)
        return self.run_operation(arg, client, 'UpdateExtension', client.update_extension(manifest))

    def list_versions(self, arg):
        client = self.mkclient(arg)
        logger('%s: requesting published extension versions' % inspect.stack()[0][3])
        versions = client.list_versions()
        if arg.get('json'):
            print_as_json(versions, out=self.out)
        else:
            print_as_table(['Namespace', 'Type', 'Version', 'Replicated?', 'Internal?', 'Regions'],
                           [[v['Namespace'], v['Type'], v['Version'], v['ReplicationCompleted'],
                             v['IsInternalExtension'], v['Regions']] for v in versions],
                           out=self.out)
        return versions

    def replication_status(self, arg):
        client = self.mkclient(arg)
        logger('%s: requesting replication status' % inspect.stack()[0][3])
        statuses = client.get_replication_status(arg['namespace'], arg['name'], arg['version'])
        if arg.get('json'):
            print_as_json(statuses, out=self.out)
        else:
            print_as_table(['Location', 'Status'], [[s['Location'], s['Status']] for s in statuses], out=self.out)
        return statuses

    def unpublish_version(self, arg):
        manifest = build_unpublish_manifest(arg['namespace'],
                                            arg['name'],
                                            arg['version'],
                                            is_xml_extension=arg.get('is_xml_extension'))
        client = self.mkclient(arg)
        return self.run_operation(arg, client, 'UpdateExtension', client.update_extension(manifest))

    def delete_version(self, arg):
        client = self.mkclient(arg)
        return self.run_operation(arg, client, 'DeleteExtension',
                                  client.delete_extension(arg['namespace'], arg['name'], arg['version']))

    def operation_status(self, arg):
        client = self.mkclient(arg)
        operation = client.get_operation_status(arg['request_id'])
        error = getattr(operation, 'error', None)
        d = dict()
        d['ID'] = getattr(operation, 'id', None) or arg['request_id']
        d['Status'] = operation.status
        d['HttpStatusCode'] = getattr(operation, 'http_status_code', None)
        d['ErrorCode'] = getattr(error, 'code', None)
        d['ErrorMessage'] = getattr(error, 'message', None)
        if arg.get('json'):
            print_as_json(d, out=self.out)
        else:
            print_as_table(list(d.keys()), [list(d.values())], out=self.out)
        return d


def positive_int(value):
    try:
        i = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError('invalid int value: %r' % value)
    if i < 1:
        raise argparse.ArgumentTypeError('must be at least 1, got %d' % i)
    return i


def non_negative_int(value):
    try:
        i = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError('invalid int value: %r' % value)
    if i < 0:
        raise argparse.ArgumentTypeError('must not be negative, got %d' % i)
    return i


def args(argv=None, harness=None):
    harness = harness or ExtensionsHarness()

    base = argparse.ArgumentParser(add_help=False)
    base.add_argument('--config', type=str, default=harness.config_file, help='configuration file (default: %s)' % harness.config_file)
    base.add_argument('--verbose', action='store_true', help='verbose output')
    base.add_argument('--log-file', type=str, default=harness.log_file, help='also write the log to this file')

    mgmt = argparse.ArgumentParser(add_help=False)
    mgmt.add_argument('--management-url', type=str, default=harness.default('MANAGEMENT_URL', 'default_management_url'), help='Azure Management URL for a non-public Azure cloud [$MANAGEMENT_URL]')
    mgmt.add_argument('--subscription-id', type=str, default=harness.default('SUBSCRIPTION_ID', 'default_subscription_id'), help='Subscription ID for the publisher subscription [$SUBSCRIPTION_ID]')
    mgmt.add_argument('--subscription-cert', type=str, default=harness.default('SUBSCRIPTION_CERT', 'default_subscription_cert'), help='Path of subscription management certificate (.pem or .pfx) file [$SUBSCRIPTION_CERT]')

    wait = argparse.ArgumentParser(add_help=False)
    wait.add_argument('--wait', type=positive_int, default=ExtensionsClient.default_wait, help='operation status poll interval in seconds (default %i)' % ExtensionsClient.default_wait)
    wait.add_argument('--timeout', type=non_negative_int, default=ExtensionsClient.default_timeout, help='operation timeout in seconds (default %i)' % ExtensionsClient.default_timeout)

    manifest = argparse.ArgumentParser(add_help=False)
    manifest.add_argument('--manifest', type=str, help="Path of extension manifest file (XML output of 'new-extension-manifest')")

    identity = argparse.ArgumentParser(add_help=False)
    identity.add_argument('--namespace', type=str, default=harness.default('EXTENSION_NAMESPACE', 'default_namespace'), help='Publisher namespace e.g. Microsoft.Azure.Extensions [$EXTENSION_NAMESPACE]')
    identity.add_argument('--name', type=str, default=harness.default('EXTENSION_NAME', 'default_name'), help='Name of the extension e.g. FooExtension [$EXTENSION_NAME]')
    identity.add_argument('--version', type=str, help='Version of the extension package e.g. 1.0.0')

    json_output = argparse.ArgumentParser(add_help=False)
    json_output.add_argument('--json', action='store_true', help='Print output as JSON')

    parser = argparse.ArgumentParser(prog='extensions-harness',
                                     description='This tool is designed for Microsoft internal extension publishers to release, update and manage Virtual Machine extensions.')
    parser.add_argument('--version', action='version', version='%(prog)s ' + __version__)
    sp = parser.add_subparsers(dest='command', metavar='command')
    sp.required = True

    parents = {'new_extension_manifest': [base, mgmt, identity],
               'new_extension': [base, mgmt, wait, manifest],
               'new_extension_version': [base, mgmt, wait, manifest],
               'promote': [base, mgmt, wait, manifest],
               'promote_all_regions': [base, mgmt, wait, manifest],
               'list_versions': [base, mgmt, json_output],
               'replication_status': [base, mgmt, identity, json_output],
               'unpublish_version': [base, mgmt, wait, identity],
               'delete_version': [base, mgmt, wait, identity],
               'operation_status': [base, mgmt, json_output]}

    subparsers = dict()
    for action in harness.actions:
        p = sp.add_parser(action['action'].replace('_', '-'), parents=parents[action['action']], help=action['help'], description=action['help'])
        p.set_defaults(action=action['action'])
        subparsers[action['action']] = p

    p = subparsers['new_extension_manifest']
    p.add_argument('--package', type=str, help='Path of extension package (.zip)')
    p.add_argument('--storage-base-url', type=str, default=harness.default('STORAGE_BASE_URL', 'default_storage_base_url'), help='Azure Storage base URL [$STORAGE_BASE_URL]')
    p.add_argument('--storage-account', type=str, default=harness.default_storage_account, help='Name of an existing storage account to be used in uploading the extension package temporarily.')
    p.add_argument('--label', type=str, help='Human readable name of the extension')
    p.add_argument('--description', type=str, help='Description of the extension')
    p.add_argument('--eula-url', type=str, help='URL to the End-User License Agreement page')
    p.add_argument('--privacy-url', type=str, help='URL to the Privacy Policy page')
    p.add_argument('--homepage-url', type=str, help='URL to the homepage of the extension')
    p.add_argument('--company', type=str, help='Human-readable Company Name of the publisher')
    p.add_argument('--supported-os', type=str, help="Extension platform e.g. 'Linux'")

    subparsers['promote'].add_argument('--region', type=str, action='append', help="Region to rollout an extension (e.g. 'Japan East'), repeat for more regions")
    subparsers['unpublish_version'].add_argument('--is-xml-extension', action='store_true', help='Set if this is an XML extension, i.e. PaaS')
    subparsers['operation_status'].add_argument('--request-id', type=str, help='x-ms-request-id of the operation')

    arg = parser.parse_args(argv)
    logger(message=str(arg))
    return arg


def main(argv=None):
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument('--config', type=str, default=None)
    known, _ = pre.parse_known_args(argv)

    try:
        harness = ExtensionsHarness(config_file=known.config)
    except HarnessError as e:
        setup_logging()
        logger(str(e), level=logging.ERROR)
        return 1

    arg = args(argv, harness)
    setup_logging(verbose=arg.verbose, log_file=arg.log_file)

    try:
        harness.run(vars(arg))
    except (HarnessError, AzureHttpError, AzureError, RequestException) as e:
        logger('%s: %s' % (type(e).__name__, e), level=logging.ERROR)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())

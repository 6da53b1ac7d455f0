#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Errors raised while provisioning a streaming server.

Everything deriving from ProvisioningError is fatal and aborts the run.
DomainResolutionWarning is the one recoverable condition, the operator
decides whether to carry on.


The MIT License

Copyright (c) 2020-2023 Chris Griffith

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in
all copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
THE SOFTWARE.
"""

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
# 2 is what argparse exits with on bad usage
EXIT_DECLINED = 3


class ProvisioningError(Exception):
    pass


class PrivilegeError(ProvisioningError):
    pass


class UnsupportedPlatformError(ProvisioningError):
    pass


class DependencyInstallError(ProvisioningError):
    pass


class CertificateIssuanceError(ProvisioningError):
    pass


class ServiceControlError(ProvisioningError):
    pass


class ConfigurationError(ProvisioningError):
    pass


class ConfigLockError(ProvisioningError):
    pass


class NetworkTimeoutError(ProvisioningError):
    pass


class ParseError(ProvisioningError):
    def __init__(self, message, line):
        super().__init__(f"{message} on line {line}")
        self.line = line


class ValidationError(ProvisioningError):
    def __init__(self, message, output=""):
        super().__init__(f"{message}: {output.strip()}" if output.strip() else message)
        self.output = output


class UserDeclined(ProvisioningError):
    pass


class DomainResolutionWarning(UserWarning):
    pass

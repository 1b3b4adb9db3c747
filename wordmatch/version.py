"""WordMatch Meta information.
   WordMatch serves vocabulary units over an RSA + AES-GCM secure channel.
"""
__title__ = 'wordmatch'
__description__ = (
   'WordMatch vocabulary server and client with a hybrid '
   'RSA/AES-GCM secure payload channel.'
)
__version__ = '1.0.0'
__license__ = 'Apache-2.0'

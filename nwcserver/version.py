NWCSERVER_VERSION = '0.3.0'   # version of the nwcserver package

NIP47_VERSION = '0.0'         # NIP-47 wallet service protocol version

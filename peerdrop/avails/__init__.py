from peerdrop.avails import constants, constants as const, useables, useables as use
from peerdrop.avails.bases import *
from peerdrop.avails.exceptions import *
from peerdrop.avails.wire import *

from askcli.app import main

main()
